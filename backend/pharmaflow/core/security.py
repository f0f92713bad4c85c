# backend/pharmaflow/core/security.py
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Annotated, FrozenSet, Optional

from fastapi import Depends, HTTPException, status, Request
from fastapi.security import OAuth2PasswordBearer
from fastapi.security.utils import get_authorization_scheme_param
from jose import jwt, JWTError
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from .clock import utcnow
from .config import get_settings
from .db import get_db
from ..domain.constants import BRANCH_CITY_MISSING, SCOPE_BRANCH
from ..models import AppUser, Tenant, TenantModule, Warehouse
from ..services.rbac_service import load_permission_codes

# Kept for the OpenAPI docs (login form)
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)

_settings = get_settings()

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=_settings.BCRYPT_ROUNDS)

ALGORITHM = _settings.JWT_ALG


# ---- Password helpers ----
def verify_password(plain: str, hashed: str) -> bool:
    try:
        return pwd_context.verify(plain, hashed)
    except ValueError:
        return False


def hash_password(plain: str) -> str:
    return pwd_context.hash(plain)


# ---- JWT ----
def create_access_token(user_id: str, tenant_id: str, expires_minutes: Optional[int] = None) -> str:
    expire = utcnow() + timedelta(minutes=expires_minutes or _settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    payload = {"sub": user_id, "tenantId": tenant_id, "typ": "access", "exp": expire}
    return jwt.encode(payload, _settings.JWT_ACCESS_SECRET, algorithm=ALGORITHM)


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Unauthorized",
        headers={"WWW-Authenticate": "Bearer"},
    )


# ---- Tolerant Authorization header parsing ----
def _extract_bearer_token(request: Request) -> str:
    """
    Parses the 'Authorization' header leniently:
      - extra spaces:      "Bearer   <JWT>"
      - doubled scheme:    "Bearer Bearer <JWT>"
      - quoted value:      Authorization: "Bearer <JWT>"
    """
    auth = request.headers.get("Authorization")
    if not auth:
        raise _unauthorized()

    auth = str(auth).strip().strip('"').strip("'")
    scheme, param = get_authorization_scheme_param(auth)

    if not scheme or scheme.lower() != "bearer":
        raise _unauthorized()

    token = (param or "").strip()

    if token.lower().startswith("bearer "):
        token = token.split(None, 1)[1].strip()

    # JWTs never contain spaces
    token = token.replace(" ", "")

    if not token:
        raise _unauthorized()

    return token


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    tenant_id: str
    email: str
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    warehouse_id: Optional[str] = None
    # None = not branch scoped; BRANCH_CITY_MISSING = scoped but no city resolvable
    branch_city: Optional[str] = None

    def has(self, code: str) -> bool:
        return code in self.permissions


def _branch_city(db: Session, user: AppUser, permissions: FrozenSet[str]) -> Optional[str]:
    if SCOPE_BRANCH not in permissions:
        return None
    if not user.WarehouseID:
        return BRANCH_CITY_MISSING
    wh = (
        db.query(Warehouse)
        .filter(Warehouse.WarehouseID == user.WarehouseID, Warehouse.TenantID == user.TenantID)
        .first()
    )
    city = (wh.City or "").strip().upper() if wh else ""
    return city or BRANCH_CITY_MISSING


# ---- Resolve the caller from the access token ----
def get_auth_context(
    db: Session = Depends(get_db),
    token: str = Depends(_extract_bearer_token),
) -> AuthContext:
    try:
        data = jwt.decode(token, _settings.JWT_ACCESS_SECRET, algorithms=[ALGORITHM])
    except JWTError:
        raise _unauthorized()

    user_id = data.get("sub")
    tenant_id = data.get("tenantId")
    if not user_id or not tenant_id or data.get("typ") != "access":
        raise _unauthorized()

    user = (
        db.query(AppUser)
        .filter(AppUser.UserID == user_id, AppUser.TenantID == tenant_id)
        .first()
    )
    if not user or not user.IsActive:
        raise _unauthorized()
    tenant = db.get(Tenant, tenant_id)
    if not tenant or not tenant.IsActive:
        raise _unauthorized()

    permissions = frozenset(load_permission_codes(db, user_id))
    return AuthContext(
        user_id=user.UserID,
        tenant_id=user.TenantID,
        email=user.Email,
        permissions=permissions,
        warehouse_id=user.WarehouseID,
        branch_city=_branch_city(db, user, permissions),
    )


AuthDep = Annotated[AuthContext, Depends(get_auth_context)]


# ---- Permission guards ----
def require_permission(*codes: str):
    def _dep(ctx: AuthDep) -> AuthContext:
        if any(c not in ctx.permissions for c in codes):
            raise HTTPException(status_code=403, detail="Forbidden")
        return ctx
    return _dep


def require_any_permission(*codes: str):
    def _dep(ctx: AuthDep) -> AuthContext:
        if not any(c in ctx.permissions for c in codes):
            raise HTTPException(status_code=403, detail="Forbidden")
        return ctx
    return _dep


def require_module(code: str):
    def _dep(ctx: AuthDep, db: Session = Depends(get_db)) -> AuthContext:
        row = (
            db.query(TenantModule)
            .filter(TenantModule.TenantID == ctx.tenant_id, TenantModule.Code == code)
            .first()
        )
        if not row or not row.Enabled:
            raise HTTPException(status_code=403, detail="Module disabled")
        return ctx
    return _dep
