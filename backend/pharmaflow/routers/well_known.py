# backend/pharmaflow/routers/well_known.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..core.api import plain
from ..core.db import get_db
from ..core.hosts import request_host
from ..domain.constants import DOMAIN_VERIFICATION_PATH
from ..services import domain_service

router = APIRouter(tags=["well-known"])


@router.get(DOMAIN_VERIFICATION_PATH, include_in_schema=False)
def domain_verification(request: Request, db: Session = Depends(get_db)):
    token = domain_service.token_for_host(db, request_host(request))
    if not token:
        return plain("not-found", status_code=404)
    return plain(token)
