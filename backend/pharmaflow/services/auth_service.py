from typing import Any, Dict, Optional
import logging

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import get_settings
from ..core.security import create_access_token, verify_password
from ..models import AppUser, Role, Tenant, TenantDomain, UserRole, Warehouse
from . import audit_service, token_service
from .common import transaction
from .rbac_service import load_permission_codes

logger = logging.getLogger(__name__)


def _invalid_credentials() -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")


def resolve_tenant_by_host(db: Session, host: Optional[str]) -> Optional[str]:
    if not host:
        return None
    row = (
        db.query(TenantDomain.TenantID)
        .join(Tenant, Tenant.TenantID == TenantDomain.TenantID)
        .filter(TenantDomain.Domain == host, TenantDomain.VerifiedAt.isnot(None), Tenant.IsActive.is_(True))
        .first()
    )
    return row[0] if row else None


def _token_pair(db: Session, user: AppUser) -> Dict[str, Any]:
    s = get_settings()
    raw, _ = token_service.issue_refresh_token(db, tenant_id=user.TenantID, user_id=user.UserID)
    return {
        "accessToken": create_access_token(user.UserID, user.TenantID),
        "refreshToken": raw,
        "tokenType": "bearer",
        "expiresIn": s.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
    }


def login(db: Session, *, email: str, password: str, host: Optional[str]) -> Dict[str, Any]:
    email_norm = email.strip().lower()
    tenant_id = resolve_tenant_by_host(db, host)

    q = (
        db.query(AppUser)
        .join(Tenant, Tenant.TenantID == AppUser.TenantID)
        .filter(func.lower(AppUser.Email) == email_norm, Tenant.IsActive.is_(True))
    )
    if tenant_id:
        user = q.filter(AppUser.TenantID == tenant_id).first()
    else:
        candidates = q.filter(AppUser.IsActive.is_(True)).limit(2).all()
        if len(candidates) > 1:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Ambiguous tenant for email; use tenant domain",
            )
        user = candidates[0] if candidates else None

    if not user or not user.IsActive or not verify_password(password, user.PasswordHash):
        raise _invalid_credentials()

    with transaction(db, "login"):
        pair = _token_pair(db, user)
        audit_service.append(
            db, tenant_id=user.TenantID, actor_user_id=user.UserID,
            action="auth.login", entity_type="User", entity_id=user.UserID,
            metadata={"host": host},
        )
    return pair


def refresh(db: Session, *, refresh_token: str) -> Dict[str, Any]:
    with transaction(db, "refresh"):
        row = token_service.find_usable(db, refresh_token)
        if row is None:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")
        user = db.get(AppUser, row.UserID)
        tenant = db.get(Tenant, row.TenantID)
        if not user or not user.IsActive or not tenant or not tenant.IsActive:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")
        token_service.revoke(db, refresh_token)
        pair = _token_pair(db, user)
        audit_service.append(
            db, tenant_id=user.TenantID, actor_user_id=user.UserID,
            action="auth.refresh", entity_type="User", entity_id=user.UserID,
        )
    return pair


def logout(db: Session, *, refresh_token: str) -> bool:
    with transaction(db, "logout"):
        revoked = token_service.revoke(db, refresh_token)
    return revoked


def me(db: Session, *, user_id: str, tenant_id: str) -> Dict[str, Any]:
    user = db.get(AppUser, user_id)
    tenant = db.get(Tenant, tenant_id)
    roles = (
        db.query(Role)
        .join(UserRole, UserRole.RoleID == Role.RoleID)
        .filter(UserRole.UserID == user_id)
        .order_by(Role.Code)
        .all()
    )
    wh = db.get(Warehouse, user.WarehouseID) if user.WarehouseID else None
    return {
        "id": user.UserID,
        "email": user.Email,
        "fullName": user.FullName,
        "tenant": {"id": tenant.TenantID, "name": tenant.Name, "country": tenant.Country},
        "roles": [{"id": r.RoleID, "code": r.Code, "name": r.Name} for r in roles],
        "permissions": sorted(load_permission_codes(db, user_id)),
        "warehouse": {"id": wh.WarehouseID, "code": wh.Code, "name": wh.Name, "city": wh.City} if wh else None,
    }
