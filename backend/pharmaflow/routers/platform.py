# backend/pharmaflow/routers/platform.py
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_permission
from ..domain.constants import PLATFORM_TENANTS_MANAGE
from ..models import Tenant
from ..schemas.platform import (
    CustomerImportRequest, DomainCreate, DomainVerify, SubscriptionExtension,
    TenantAdminCreate, TenantCreate, TenantUpdate, UserStatusUpdate,
)
from ..services import customer_import, domain_service, platform_service

router = APIRouter(prefix="/api/v1/platform", tags=["platform"])

Operator = require_permission(PLATFORM_TENANTS_MANAGE)


def _tenant_or_404(db: Session, tenant_id: str) -> Tenant:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return tenant


# ---- Tenants ----
@router.get("/tenants")
def list_tenants(
    take: int = Query(20, ge=1, le=50),
    cursor: Optional[str] = None,
    q: Optional[str] = Query(None, max_length=200),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    rows, next_cursor = platform_service.list_tenants(db, q=q, cursor=cursor, take=take)
    items = [platform_service.serialize_tenant(t) for t in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.post("/tenants", status_code=status.HTTP_201_CREATED)
def create_tenant(payload: TenantCreate, ctx: AuthContext = Depends(Operator), db: Session = Depends(get_db)):
    return ok(platform_service.create_tenant(db, payload=payload, actor=ctx), status_code=status.HTTP_201_CREATED)


@router.patch("/tenants/{tenant_id}")
def update_tenant(
    payload: TenantUpdate,
    tenant_id: str = Path(...),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    if payload.isActive is None and payload.branchLimit is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
    t = platform_service.update_tenant(
        db, tenant_id=tenant_id, is_active=payload.isActive, branch_limit=payload.branchLimit, actor=ctx
    )
    return ok(platform_service.serialize_tenant(t))


@router.patch("/tenants/{tenant_id}/subscription")
def extend_subscription(
    payload: SubscriptionExtension,
    tenant_id: str = Path(...),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    t = platform_service.extend_subscription(
        db, tenant_id=tenant_id, extension_months=payload.extensionMonths, actor=ctx
    )
    return ok(platform_service.serialize_tenant(t))


# ---- Users ----
@router.get("/users")
def list_users(
    q: Optional[str] = Query(None, max_length=200),
    tenantId: Optional[str] = None,
    take: int = Query(20, ge=1, le=50),
    cursor: Optional[str] = None,
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    items, next_cursor = platform_service.list_users(db, q=q, tenant_id=tenantId, cursor=cursor, take=take)
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.post("/tenant-admins", status_code=status.HTTP_201_CREATED)
def create_tenant_admin(payload: TenantAdminCreate, ctx: AuthContext = Depends(Operator), db: Session = Depends(get_db)):
    user = platform_service.create_tenant_admin(
        db, tenant_id=payload.tenantId, email=payload.email, password=payload.password,
        full_name=payload.fullName, actor=ctx,
    )
    return ok(user, status_code=status.HTTP_201_CREATED)


@router.patch("/users/{user_id}/status")
def set_user_status(
    payload: UserStatusUpdate,
    user_id: str = Path(...),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    return ok(platform_service.set_user_status(db, user_id=user_id, is_active=payload.isActive, actor=ctx))


@router.post("/users/{user_id}/reset-password")
def reset_password(user_id: str = Path(...), ctx: AuthContext = Depends(Operator), db: Session = Depends(get_db)):
    return ok(platform_service.reset_password(db, user_id=user_id, actor=ctx))


# ---- Customer import ----
@router.post("/tenants/{tenant_id}/import/customers")
def import_customers(
    payload: CustomerImportRequest,
    tenant_id: str = Path(...),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    result = customer_import.import_customers(
        db, tenant_id=tenant_id, csv_text=payload.csv, dry_run=payload.dryRun, actor=ctx
    )
    return ok(result)


# ---- Domains ----
@router.get("/tenants/{tenant_id}/domains")
def list_domains(tenant_id: str = Path(...), ctx: AuthContext = Depends(Operator), db: Session = Depends(get_db)):
    _tenant_or_404(db, tenant_id)
    items = [domain_service.serialize_domain(d) for d in domain_service.list_domains(db, tenant_id=tenant_id)]
    return ok(items, meta=list_meta(items))


@router.post("/tenants/{tenant_id}/domains", status_code=status.HTTP_201_CREATED)
def create_domain(
    payload: DomainCreate,
    tenant_id: str = Path(...),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    result = domain_service.create_domain(
        db, tenant_id=tenant_id, raw_domain=payload.domain, is_primary=payload.isPrimary, actor=ctx
    )
    return ok(result, status_code=status.HTTP_201_CREATED)


@router.post("/tenants/{tenant_id}/domains/{domain}/verify")
def verify_domain(
    payload: Optional[DomainVerify] = None,
    tenant_id: str = Path(...),
    domain: str = Path(...),
    ctx: AuthContext = Depends(Operator),
    db: Session = Depends(get_db),
):
    timeout_ms = payload.timeoutMs if payload else None
    return ok(domain_service.verify_domain(db, tenant_id=tenant_id, raw_domain=domain, timeout_ms=timeout_ms, actor=ctx))
