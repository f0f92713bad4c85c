from typing import Any, Dict, List, Optional, Sequence
import logging

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import iso
from ..core.security import hash_password
from ..models import AppUser, Permission, Role, UserRole, Warehouse
from . import audit_service
from .common import contains_ci, keyset_page, transaction
from .rbac_service import ensure_permission_catalog, role_permission_codes, set_role_permissions

logger = logging.getLogger(__name__)


def serialize_role(role: Role) -> Dict[str, Any]:
    return {
        "id": role.RoleID,
        "code": role.Code,
        "name": role.Name,
        "isSystem": bool(role.IsSystem),
        "permissionCodes": role_permission_codes(role),
    }


def serialize_user(u: AppUser) -> Dict[str, Any]:
    wh = u.warehouse
    return {
        "id": u.UserID,
        "email": u.Email,
        "fullName": u.FullName,
        "isActive": bool(u.IsActive),
        "createdAt": iso(u.CreatedAt),
        "roles": sorted(
            ({"id": ur.role.RoleID, "code": ur.role.Code, "name": ur.role.Name} for ur in u.roles),
            key=lambda r: r["code"],
        ),
        "warehouse": {"id": wh.WarehouseID, "code": wh.Code, "name": wh.Name, "city": wh.City} if wh else None,
    }


def list_permissions(db: Session) -> List[Dict[str, Any]]:
    rows = db.query(Permission).filter(Permission.IsPlatform.is_(False)).order_by(Permission.Code).all()
    return [{"id": p.PermissionID, "code": p.Code, "description": p.Description} for p in rows]


def _resolve_permission_codes(db: Session, codes: Sequence[str]):
    catalog = ensure_permission_catalog(db)
    unknown = sorted({c for c in codes if c not in catalog})
    if unknown:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown permissions: {', '.join(unknown)}")
    if any(catalog[c].IsPlatform for c in codes):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return catalog


def _tenant_roles(db: Session, tenant_id: str, role_ids: Sequence[str]) -> List[Role]:
    ids = set(role_ids)
    if not ids:
        return []
    roles = db.query(Role).filter(Role.TenantID == tenant_id, Role.RoleID.in_(ids)).all()
    if len(roles) != len(ids):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid roleIds")
    return roles


def _tenant_warehouse(db: Session, tenant_id: str, warehouse_id: Optional[str]) -> Optional[Warehouse]:
    if not warehouse_id:
        return None
    wh = db.query(Warehouse).filter(Warehouse.TenantID == tenant_id, Warehouse.WarehouseID == warehouse_id).first()
    if not wh:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Warehouse not found")
    return wh


# ---- Roles ----
def list_roles(db: Session, *, tenant_id: str) -> List[Role]:
    return db.query(Role).filter(Role.TenantID == tenant_id).order_by(Role.Code).all()


def create_role(db: Session, *, tenant_id: str, code: str, name: str, permission_codes: Sequence[str], actor) -> Role:
    code = code.strip().upper()
    if db.query(Role.RoleID).filter(Role.TenantID == tenant_id, Role.Code == code).first():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Role code already exists")
    with transaction(db, "create_role", conflict_detail="Role code already exists"):
        catalog = _resolve_permission_codes(db, permission_codes)
        role = Role(TenantID=tenant_id, Code=code, Name=name.strip(), IsSystem=False, CreatedBy=actor.user_id)
        db.add(role)
        db.flush()
        set_role_permissions(db, role, permission_codes, catalog)
        audit_service.append(
            db, tenant_id=tenant_id, actor_user_id=actor.user_id,
            action="admin.role.create", entity_type="Role", entity_id=role.RoleID,
            after={"code": code, "name": role.Name, "permissionCodes": sorted(set(permission_codes))},
        )
    db.refresh(role)
    return role


def replace_role_permissions(db: Session, *, tenant_id: str, role_id: str, permission_codes: Sequence[str], actor) -> Role:
    with transaction(db, "replace_role_permissions"):
        role = db.query(Role).filter(Role.TenantID == tenant_id, Role.RoleID == role_id).one_or_none()
        if not role:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Role not found")
        before = role_permission_codes(role)
        catalog = _resolve_permission_codes(db, permission_codes)
        set_role_permissions(db, role, permission_codes, catalog)
        audit_service.append(
            db, tenant_id=tenant_id, actor_user_id=actor.user_id,
            action="admin.role.permissions.replace", entity_type="Role", entity_id=role.RoleID,
            before={"permissionCodes": before}, after={"permissionCodes": sorted(set(permission_codes))},
        )
    db.refresh(role)
    return role


# ---- Users ----
def list_users(db: Session, *, tenant_id: str, q: Optional[str], cursor: Optional[str], take: int):
    query = db.query(AppUser).filter(AppUser.TenantID == tenant_id)
    if q:
        query = query.filter(contains_ci(AppUser.Email, q) | contains_ci(AppUser.FullName, q))
    return keyset_page(db, query, AppUser, AppUser.CreatedAt, AppUser.UserID, cursor=cursor, take=take)


def create_user(
    db: Session,
    *,
    tenant_id: str,
    email: str,
    password: str,
    full_name: Optional[str],
    role_ids: Sequence[str],
    warehouse_id: Optional[str],
    actor,
) -> AppUser:
    email_norm = email.strip().lower()
    exists = (
        db.query(AppUser.UserID)
        .filter(AppUser.TenantID == tenant_id, func.lower(AppUser.Email) == email_norm)
        .first()
    )
    if exists:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already exists")

    with transaction(db, "create_user", conflict_detail="Email already exists"):
        roles = _tenant_roles(db, tenant_id, role_ids)
        wh = _tenant_warehouse(db, tenant_id, warehouse_id)
        user = AppUser(
            TenantID=tenant_id,
            Email=email_norm,
            PasswordHash=hash_password(password),
            FullName=full_name,
            WarehouseID=wh.WarehouseID if wh else None,
            CreatedBy=actor.user_id,
        )
        db.add(user)
        db.flush()
        for r in roles:
            db.add(UserRole(UserID=user.UserID, RoleID=r.RoleID))
        audit_service.append(
            db, tenant_id=tenant_id, actor_user_id=actor.user_id,
            action="admin.user.create", entity_type="User", entity_id=user.UserID,
            after={"email": email_norm, "roleIds": sorted(r.RoleID for r in roles), "warehouseId": user.WarehouseID},
        )
    db.refresh(user)
    return user


def _get_user(db: Session, tenant_id: str, user_id: str) -> AppUser:
    user = db.query(AppUser).filter(AppUser.TenantID == tenant_id, AppUser.UserID == user_id).one_or_none()
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def replace_user_roles(db: Session, *, tenant_id: str, user_id: str, role_ids: Sequence[str], actor) -> AppUser:
    with transaction(db, "replace_user_roles"):
        user = _get_user(db, tenant_id, user_id)
        roles = _tenant_roles(db, tenant_id, role_ids)
        before = sorted(ur.RoleID for ur in user.roles)
        user.roles.clear()
        db.flush()
        for r in roles:
            user.roles.append(UserRole(RoleID=r.RoleID))
        audit_service.append(
            db, tenant_id=tenant_id, actor_user_id=actor.user_id,
            action="admin.user.roles.replace", entity_type="User", entity_id=user.UserID,
            before={"roleIds": before}, after={"roleIds": sorted(r.RoleID for r in roles)},
        )
    db.refresh(user)
    return user


def set_user_warehouse(db: Session, *, tenant_id: str, user_id: str, warehouse_id: Optional[str], actor) -> AppUser:
    with transaction(db, "set_user_warehouse"):
        user = _get_user(db, tenant_id, user_id)
        wh = _tenant_warehouse(db, tenant_id, warehouse_id)
        before = user.WarehouseID
        user.WarehouseID = wh.WarehouseID if wh else None
        audit_service.append(
            db, tenant_id=tenant_id, actor_user_id=actor.user_id,
            action="admin.user.warehouse", entity_type="User", entity_id=user.UserID,
            before={"warehouseId": before}, after={"warehouseId": user.WarehouseID},
        )
    db.refresh(user)
    return user
