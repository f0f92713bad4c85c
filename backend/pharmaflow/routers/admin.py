# backend/pharmaflow/routers/admin.py
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_permission
from ..domain.constants import ADMIN_USERS_MANAGE
from ..schemas.admin import RoleCreate, RolePermissionsUpdate, UserCreate, UserRolesUpdate, UserWarehouseUpdate
from ..services import admin_service

router = APIRouter(prefix="/api/v1/admin", tags=["admin"])

Admin = require_permission(ADMIN_USERS_MANAGE)


@router.get("/permissions")
def list_permissions(ctx: AuthContext = Depends(Admin), db: Session = Depends(get_db)):
    items = admin_service.list_permissions(db)
    return ok(items, meta=list_meta(items))


# ---- Roles ----
@router.get("/roles")
def list_roles(ctx: AuthContext = Depends(Admin), db: Session = Depends(get_db)):
    items = [admin_service.serialize_role(r) for r in admin_service.list_roles(db, tenant_id=ctx.tenant_id)]
    return ok(items, meta=list_meta(items))


@router.post("/roles", status_code=status.HTTP_201_CREATED)
def create_role(payload: RoleCreate, ctx: AuthContext = Depends(Admin), db: Session = Depends(get_db)):
    role = admin_service.create_role(
        db, tenant_id=ctx.tenant_id, code=payload.code, name=payload.name,
        permission_codes=payload.permissionCodes, actor=ctx,
    )
    return ok(admin_service.serialize_role(role), status_code=status.HTTP_201_CREATED)


@router.put("/roles/{role_id}/permissions")
def replace_role_permissions(
    payload: RolePermissionsUpdate,
    role_id: str = Path(...),
    ctx: AuthContext = Depends(Admin),
    db: Session = Depends(get_db),
):
    role = admin_service.replace_role_permissions(
        db, tenant_id=ctx.tenant_id, role_id=role_id, permission_codes=payload.permissionCodes, actor=ctx
    )
    return ok(admin_service.serialize_role(role))


# ---- Users ----
@router.get("/users")
def list_users(
    q: Optional[str] = Query(None, max_length=200),
    cursor: Optional[str] = None,
    take: int = Query(20, ge=1, le=50),
    ctx: AuthContext = Depends(Admin),
    db: Session = Depends(get_db),
):
    rows, next_cursor = admin_service.list_users(db, tenant_id=ctx.tenant_id, q=q, cursor=cursor, take=take)
    items = [admin_service.serialize_user(u) for u in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.post("/users", status_code=status.HTTP_201_CREATED)
def create_user(payload: UserCreate, ctx: AuthContext = Depends(Admin), db: Session = Depends(get_db)):
    user = admin_service.create_user(
        db,
        tenant_id=ctx.tenant_id,
        email=payload.email,
        password=payload.password,
        full_name=payload.fullName,
        role_ids=payload.roleIds,
        warehouse_id=payload.warehouseId,
        actor=ctx,
    )
    return ok(admin_service.serialize_user(user), status_code=status.HTTP_201_CREATED)


@router.put("/users/{user_id}/roles")
def replace_user_roles(
    payload: UserRolesUpdate,
    user_id: str = Path(...),
    ctx: AuthContext = Depends(Admin),
    db: Session = Depends(get_db),
):
    user = admin_service.replace_user_roles(db, tenant_id=ctx.tenant_id, user_id=user_id, role_ids=payload.roleIds, actor=ctx)
    return ok(admin_service.serialize_user(user))


@router.patch("/users/{user_id}/warehouse")
def set_user_warehouse(
    payload: UserWarehouseUpdate,
    user_id: str = Path(...),
    ctx: AuthContext = Depends(Admin),
    db: Session = Depends(get_db),
):
    user = admin_service.set_user_warehouse(
        db, tenant_id=ctx.tenant_id, user_id=user_id, warehouse_id=payload.warehouseId, actor=ctx
    )
    return ok(admin_service.serialize_user(user))
