from typing import Dict, Iterable, List, Set
import logging

from sqlalchemy.orm import Session

from ..domain.constants import (
    ALL_MODULES, ALL_PERMISSIONS, PERMISSION_DESCRIPTIONS, PLATFORM_TENANTS_MANAGE, SYSTEM_ROLES,
)
from ..models import Permission, Role, RolePermission, TenantModule, UserRole

logger = logging.getLogger(__name__)


def load_permission_codes(db: Session, user_id: str) -> Set[str]:
    """Union of permission codes over all roles of the user."""
    rows = (
        db.query(Permission.Code)
        .join(RolePermission, RolePermission.PermissionID == Permission.PermissionID)
        .join(UserRole, UserRole.RoleID == RolePermission.RoleID)
        .filter(UserRole.UserID == user_id)
        .distinct()
        .all()
    )
    return {r[0] for r in rows}


def ensure_permission_catalog(db: Session) -> Dict[str, Permission]:
    existing = {p.Code: p for p in db.query(Permission).all()}
    for code in ALL_PERMISSIONS:
        if code not in existing:
            perm = Permission(
                Code=code,
                Description=PERMISSION_DESCRIPTIONS[code],
                IsPlatform=(code == PLATFORM_TENANTS_MANAGE),
            )
            db.add(perm)
            existing[code] = perm
    db.flush()
    return existing


def ensure_tenant_modules(db: Session, tenant_id: str, enabled: bool = True) -> None:
    have = {m.Code for m in db.query(TenantModule).filter(TenantModule.TenantID == tenant_id).all()}
    for code in ALL_MODULES:
        if code not in have:
            db.add(TenantModule(TenantID=tenant_id, Code=code, Enabled=enabled))
    db.flush()


def set_role_permissions(db: Session, role: Role, codes: Iterable[str], catalog: Dict[str, Permission]) -> None:
    wanted = {catalog[c].PermissionID for c in codes}
    current = {rp.PermissionID: rp for rp in role.permissions}
    for pid, rp in current.items():
        if pid not in wanted:
            role.permissions.remove(rp)
    for pid in wanted - set(current):
        role.permissions.append(RolePermission(PermissionID=pid))
    db.flush()


def upsert_role(db: Session, tenant_id: str, code: str, name: str, *, is_system: bool, created_by=None) -> Role:
    role = db.query(Role).filter(Role.TenantID == tenant_id, Role.Code == code).first()
    if role is None:
        role = Role(TenantID=tenant_id, Code=code, Name=name, IsSystem=is_system, CreatedBy=created_by)
        db.add(role)
        db.flush()
    return role


def ensure_system_roles(db: Session, tenant_id: str) -> Dict[str, Role]:
    """
    Idempotent: permission catalog, tenant modules and the system roles
    with their exact permission sets. Does not commit.
    """
    catalog = ensure_permission_catalog(db)
    ensure_tenant_modules(db, tenant_id)
    roles: Dict[str, Role] = {}
    for code, (name, perms) in SYSTEM_ROLES.items():
        role = upsert_role(db, tenant_id, code, name, is_system=True)
        set_role_permissions(db, role, perms, catalog)
        roles[code] = role
    logger.debug("system roles ensured for tenant %s", tenant_id)
    return roles


def role_permission_codes(role: Role) -> List[str]:
    return sorted(rp.permission.Code for rp in role.permissions)
