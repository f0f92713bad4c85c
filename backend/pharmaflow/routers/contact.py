# backend/pharmaflow/routers/contact.py
from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from ..core.api import ok
from ..core.db import get_db
from ..core.security import AuthContext, require_permission
from ..domain.constants import PLATFORM_TENANTS_MANAGE
from ..schemas.tenant import ContactInfoUpdate
from ..services import tenant_service

router = APIRouter(prefix="/api/v1/contact", tags=["contact"])


@router.get("/info")
def get_contact_info(db: Session = Depends(get_db)):
    return ok(tenant_service.serialize_contact(tenant_service.get_contact_info(db)))


@router.patch("/info")
def update_contact_info(
    payload: ContactInfoUpdate,
    ctx: AuthContext = Depends(require_permission(PLATFORM_TENANTS_MANAGE)),
    db: Session = Depends(get_db),
):
    row = tenant_service.update_contact_info(
        db, modal_header=payload.modalHeader, modal_body=payload.modalBody, actor=ctx
    )
    return ok(tenant_service.serialize_contact(row))
