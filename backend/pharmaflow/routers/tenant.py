# backend/pharmaflow/routers/tenant.py
from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from ..core.api import ok
from ..core.db import get_db
from ..core.hosts import request_host
from ..core.security import AuthContext, AuthDep, require_permission
from ..domain.constants import ADMIN_USERS_MANAGE
from ..schemas.tenant import BrandingUpdate, ExtensionRequest
from ..services import tenant_service

router = APIRouter(prefix="/api/v1", tags=["tenant"])


@router.get("/public/tenant/branding")
def public_branding(request: Request, db: Session = Depends(get_db)):
    return ok(tenant_service.public_branding(db, request_host(request)))


@router.get("/tenant/branding")
def get_branding(ctx: AuthDep, db: Session = Depends(get_db)):
    return ok(tenant_service.get_branding(db, tenant_id=ctx.tenant_id))


@router.patch("/tenant/branding")
def update_branding(
    payload: BrandingUpdate,
    ctx: AuthContext = Depends(require_permission(ADMIN_USERS_MANAGE)),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True)
    return ok(tenant_service.update_branding(db, tenant_id=ctx.tenant_id, changes=changes, actor=ctx))


@router.get("/tenant/subscription")
def get_subscription(ctx: AuthDep, db: Session = Depends(get_db)):
    return ok(tenant_service.get_subscription(db, tenant_id=ctx.tenant_id))


@router.post("/tenant/subscription/request-extension")
def request_extension(payload: ExtensionRequest, ctx: AuthDep, db: Session = Depends(get_db)):
    result = tenant_service.request_extension(
        db,
        tenant_id=ctx.tenant_id,
        branch_limit=payload.branchLimit,
        subscription_months=payload.subscriptionMonths,
        actor=ctx,
    )
    return ok(result)
