# backend/pharmaflow/routers/dashboards.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.api import ok
from ..core.db import get_db
from ..core.security import AuthDep
from ..services import dashboard_service

router = APIRouter(prefix="/api/v1/dashboards", tags=["dashboards"])


@router.get("/executive-summary")
def executive_summary(ctx: AuthDep, db: Session = Depends(get_db)):
    return ok(dashboard_service.executive_summary(db, tenant_id=ctx.tenant_id))
