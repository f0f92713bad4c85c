# backend/pharmaflow/routers/warehouses.py
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, AuthDep, require_permission
from ..domain.constants import STOCK_MANAGE
from ..schemas.warehouse import WarehouseCreate, WarehouseUpdate
from ..services import warehouse_service

router = APIRouter(prefix="/api/v1/warehouses", tags=["warehouses"])

Manager = require_permission(STOCK_MANAGE)


@router.get("")
def list_warehouses(
    ctx: AuthDep,
    take: int = Query(20, ge=1, le=50),
    cursor: Optional[str] = None,
    db: Session = Depends(get_db),
):
    rows, next_cursor = warehouse_service.list_warehouses(db, tenant_id=ctx.tenant_id, cursor=cursor, take=take)
    items = [warehouse_service.serialize_warehouse(w) for w in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_warehouse(payload: WarehouseCreate, ctx: AuthContext = Depends(Manager), db: Session = Depends(get_db)):
    wh = warehouse_service.create_warehouse(db, actor=ctx, code=payload.code, name=payload.name, city=payload.city)
    return ok(warehouse_service.serialize_warehouse(wh), status_code=status.HTTP_201_CREATED)


@router.patch("/{warehouse_id}")
def update_warehouse(
    payload: WarehouseUpdate,
    warehouse_id: str = Path(...),
    ctx: AuthContext = Depends(Manager),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"version"})
    wh = warehouse_service.update_warehouse(
        db, actor=ctx, warehouse_id=warehouse_id, version=payload.version, changes=changes
    )
    return ok(warehouse_service.serialize_warehouse(wh))


@router.get("/{warehouse_id}/locations")
def list_locations(ctx: AuthDep, warehouse_id: str = Path(...), db: Session = Depends(get_db)):
    rows = warehouse_service.list_locations(db, tenant_id=ctx.tenant_id, warehouse_id=warehouse_id)
    items = [warehouse_service.serialize_location(loc) for loc in rows]
    return ok(items, meta=list_meta(items))
