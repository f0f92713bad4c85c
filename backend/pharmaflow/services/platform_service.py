"""Platform operator services: tenant provisioning, subscriptions and cross-tenant users."""
import logging
import secrets
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import add_months, iso, utcnow
from ..core.security import hash_password
from ..domain.constants import ALL_MODULES, ROLE_TENANT_ADMIN
from ..models import AppUser, Location, Role, Tenant, TenantDomain, TenantModule, UserRole, Warehouse
from . import audit_service, token_service
from .common import contains_ci, keyset_page, transaction
from .domain_service import normalize_and_validate
from .mailer import MailerNotConfigured, get_mailer
from .rbac_service import ensure_system_roles

logger = logging.getLogger(__name__)


def _email_taken(db: Session, email: str) -> bool:
    return db.query(AppUser.UserID).filter(func.lower(AppUser.Email) == email.strip().lower()).first() is not None


def serialize_tenant(t: Tenant) -> Dict[str, Any]:
    return {
        "id": t.TenantID,
        "name": t.Name,
        "isActive": bool(t.IsActive),
        "branchLimit": t.BranchLimit,
        "contactName": t.ContactName,
        "contactEmail": t.ContactEmail,
        "contactPhone": t.ContactPhone,
        "subscriptionExpiresAt": iso(t.SubscriptionExpiresAt),
        "createdAt": iso(t.CreatedAt),
        "domains": [
            {"domain": d.Domain, "isPrimary": bool(d.IsPrimary), "verifiedAt": iso(d.VerifiedAt)}
            for d in t.domains
        ],
    }


def serialize_platform_user(u: AppUser, tenant_name: Optional[str]) -> Dict[str, Any]:
    return {
        "id": u.UserID,
        "email": u.Email,
        "fullName": u.FullName,
        "isActive": bool(u.IsActive),
        "tenantId": u.TenantID,
        "tenantName": tenant_name,
        "createdAt": iso(u.CreatedAt),
    }


# ---- Tenants ----
def list_tenants(db: Session, *, q: Optional[str], cursor: Optional[str], take: int) -> Tuple[List[Tenant], Optional[str]]:
    query = db.query(Tenant)
    if q:
        query = query.filter(contains_ci(Tenant.Name, q))
    return keyset_page(db, query, Tenant, Tenant.CreatedAt, Tenant.TenantID, cursor=cursor, take=take)


def provision_tenant(
    db: Session,
    *,
    name: str,
    branch_count: int,
    admin_email: str,
    admin_password: str,
    contact_name: Optional[str],
    contact_email: Optional[str],
    contact_phone: Optional[str],
    subscription_months: int,
    primary_domain: Optional[str] = None,
    created_by: Optional[str] = None,
    admin_full_name: Optional[str] = None,
) -> Tenant:
    """All inserts for a new tenant; runs inside the caller's transaction."""
    now = utcnow()
    tenant = Tenant(
        Name=name.strip(),
        BranchLimit=branch_count,
        ContactName=contact_name,
        ContactEmail=contact_email,
        ContactPhone=contact_phone,
        SubscriptionExpiresAt=add_months(now, subscription_months),
        CreatedBy=created_by,
    )
    db.add(tenant)
    db.flush()

    for code in ALL_MODULES:
        db.add(TenantModule(TenantID=tenant.TenantID, Code=code, Enabled=True))
    db.flush()

    roles = ensure_system_roles(db, tenant.TenantID)

    admin = AppUser(
        TenantID=tenant.TenantID,
        Email=admin_email.strip().lower(),
        PasswordHash=hash_password(admin_password),
        FullName=admin_full_name or "Administrador",
        CreatedBy=created_by,
    )
    db.add(admin)
    db.flush()
    db.add(UserRole(UserID=admin.UserID, RoleID=roles[ROLE_TENANT_ADMIN].RoleID))

    for i in range(1, branch_count + 1):
        wh = Warehouse(
            TenantID=tenant.TenantID,
            Code=f"BR-{i:02d}",
            Name=f"Sucursal {i}",
            CreatedBy=created_by,
        )
        db.add(wh)
        db.flush()
        db.add(Location(
            TenantID=tenant.TenantID,
            WarehouseID=wh.WarehouseID,
            Code="BIN-01",
            Type="BIN",
            CreatedBy=created_by,
        ))

    if primary_domain:
        db.add(TenantDomain(
            TenantID=tenant.TenantID,
            Domain=primary_domain,
            IsPrimary=True,
            VerifiedAt=now,
            CreatedBy=created_by,
        ))
    db.flush()
    return tenant


def create_tenant(db: Session, *, payload, actor) -> Dict[str, Any]:
    domain = normalize_and_validate(payload.primaryDomain) if payload.primaryDomain else None

    if _email_taken(db, payload.adminEmail):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")
    if domain and db.query(TenantDomain.TenantDomainID).filter(TenantDomain.Domain == domain).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Domain already in use")

    with transaction(db, "create_tenant", conflict_detail="Tenant, email or domain already exists"):
        tenant = provision_tenant(
            db,
            name=payload.name,
            branch_count=payload.branchCount,
            admin_email=payload.adminEmail,
            admin_password=payload.adminPassword,
            contact_name=payload.contactName,
            contact_email=payload.contactEmail,
            contact_phone=payload.contactPhone,
            subscription_months=payload.subscriptionMonths,
            primary_domain=domain,
            created_by=actor.user_id,
        )
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.tenant.create", entity_type="Tenant", entity_id=tenant.TenantID,
            after={
                "id": tenant.TenantID, "name": tenant.Name, "branchCount": payload.branchCount,
                "adminEmail": payload.adminEmail, "primaryDomain": domain,
                "subscriptionMonths": payload.subscriptionMonths,
            },
        )
    logger.info("tenant provisioned: %s (%s)", tenant.Name, tenant.TenantID)
    return {"id": tenant.TenantID, "name": tenant.Name, "subscriptionExpiresAt": iso(tenant.SubscriptionExpiresAt)}


def update_tenant(db: Session, *, tenant_id: str, is_active: Optional[bool], branch_limit: Optional[int], actor) -> Tenant:
    if is_active is None and branch_limit is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Nothing to update")
    with transaction(db, "update_tenant"):
        tenant = db.query(Tenant).filter(Tenant.TenantID == tenant_id).with_for_update().one_or_none()
        if not tenant:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
        before = {"isActive": bool(tenant.IsActive), "branchLimit": tenant.BranchLimit}
        if is_active is not None:
            tenant.IsActive = is_active
        if branch_limit is not None:
            tenant.BranchLimit = branch_limit
        tenant.Version = int(tenant.Version or 0) + 1
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.tenant.update", entity_type="Tenant", entity_id=tenant_id,
            before=before, after={"isActive": bool(tenant.IsActive), "branchLimit": tenant.BranchLimit},
        )
    return tenant


def extend_subscription(db: Session, *, tenant_id: str, extension_months: int, actor) -> Tenant:
    with transaction(db, "extend_subscription"):
        tenant = db.query(Tenant).filter(Tenant.TenantID == tenant_id).with_for_update().one_or_none()
        if not tenant:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
        now = utcnow()
        current = tenant.SubscriptionExpiresAt
        base = current if current and current > now else now
        before = iso(current)
        tenant.SubscriptionExpiresAt = add_months(base, extension_months)
        tenant.Version = int(tenant.Version or 0) + 1
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.tenant.subscription.extend", entity_type="Tenant", entity_id=tenant_id,
            before={"subscriptionExpiresAt": before},
            after={"subscriptionExpiresAt": iso(tenant.SubscriptionExpiresAt), "extensionMonths": extension_months},
        )
    return tenant


# ---- Users across tenants ----
def list_users(db: Session, *, q: Optional[str], tenant_id: Optional[str], cursor: Optional[str], take: int):
    query = db.query(AppUser)
    if q:
        query = query.filter(contains_ci(AppUser.Email, q))
    if tenant_id:
        query = query.filter(AppUser.TenantID == tenant_id)
    rows, next_cursor = keyset_page(db, query, AppUser, AppUser.CreatedAt, AppUser.UserID, cursor=cursor, take=take)
    names = dict(
        db.query(Tenant.TenantID, Tenant.Name).filter(Tenant.TenantID.in_({u.TenantID for u in rows})).all()
    ) if rows else {}
    return [serialize_platform_user(u, names.get(u.TenantID)) for u in rows], next_cursor


def create_tenant_admin(db: Session, *, tenant_id: str, email: str, password: str, full_name: Optional[str], actor):
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    role = db.query(Role).filter(Role.TenantID == tenant_id, Role.Code == ROLE_TENANT_ADMIN).first()
    if not role:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="TENANT_ADMIN role not found")
    if _email_taken(db, email):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    with transaction(db, "create_tenant_admin", conflict_detail="Email already exists"):
        user = AppUser(
            TenantID=tenant_id,
            Email=email.strip().lower(),
            PasswordHash=hash_password(password),
            FullName=full_name,
            CreatedBy=actor.user_id,
        )
        db.add(user)
        db.flush()
        db.add(UserRole(UserID=user.UserID, RoleID=role.RoleID))
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.tenant-admin.create", entity_type="User", entity_id=user.UserID,
            after={"tenantId": tenant_id, "email": user.Email},
        )
    return serialize_platform_user(user, tenant.Name)


def set_user_status(db: Session, *, user_id: str, is_active: bool, actor):
    with transaction(db, "set_user_status"):
        user = db.query(AppUser).filter(AppUser.UserID == user_id).with_for_update().one_or_none()
        if not user:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        before = bool(user.IsActive)
        user.IsActive = is_active
        if not is_active:
            token_service.revoke_all_for_user(db, user.UserID)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.user.status", entity_type="User", entity_id=user.UserID,
            before={"isActive": before}, after={"isActive": is_active, "tenantId": user.TenantID},
        )
    tenant = db.get(Tenant, user.TenantID)
    return serialize_platform_user(user, tenant.Name if tenant else None)


def reset_password(db: Session, *, user_id: str, actor) -> Dict[str, Any]:
    temporary = secrets.token_urlsafe(12)
    with transaction(db, "reset_password"):
        user = db.query(AppUser).filter(AppUser.UserID == user_id).with_for_update().one_or_none()
        if not user:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
        user.PasswordHash = hash_password(temporary)
        revoked = token_service.revoke_all_for_user(db, user.UserID)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.user.reset-password", entity_type="User", entity_id=user.UserID,
            metadata={"tenantId": user.TenantID, "revokedTokens": revoked},
        )

    email_sent = False
    mailer = get_mailer()
    if mailer.configured:
        try:
            mailer.send_password_reset_email(user.Email, temporary)
            email_sent = True
        except (MailerNotConfigured, OSError) as e:
            logger.warning("password reset mail failed for %s: %s", user.Email, e)
    return {"userId": user.UserID, "temporaryPassword": temporary, "emailSent": email_sent}
