# backend/pharmaflow/routers/stock.py
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_module, require_permission
from ..domain.constants import MODULE_WAREHOUSE, SCOPE_BRANCH, STOCK_MANAGE, STOCK_MOVE, STOCK_READ
from ..schemas.stock import (
    BulkFulfillRequest, BulkTransferCreate, MovementCreate, MovementRequestCreate, RequestConfirm, ReturnCreate,
)
from ..services import movement_request_service, return_service, stock_service

router = APIRouter(
    prefix="/api/v1/stock",
    tags=["stock"],
    dependencies=[Depends(require_module(MODULE_WAREHOUSE))],
)

Reader = require_permission(STOCK_READ)
Mover = require_permission(STOCK_MOVE)


# ---- Movements ----
@router.post("/movements", status_code=status.HTTP_201_CREATED)
def create_movement(payload: MovementCreate, ctx: AuthContext = Depends(Mover), db: Session = Depends(get_db)):
    return ok(stock_service.create_movement(db, actor=ctx, payload=payload), status_code=status.HTTP_201_CREATED)


@router.post("/bulk-transfers", status_code=status.HTTP_201_CREATED)
def bulk_transfer(payload: BulkTransferCreate, ctx: AuthContext = Depends(Mover), db: Session = Depends(get_db)):
    result = stock_service.bulk_transfer(db, actor=ctx, payload=payload)
    return ok(result, meta={"count": len(result["items"])}, status_code=status.HTTP_201_CREATED)


# ---- Balances ----
@router.get("/balances")
def list_balances(
    locationId: Optional[str] = None,
    productId: Optional[str] = None,
    take: int = Query(100, ge=1, le=200),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows = stock_service.list_balances(
        db, tenant_id=ctx.tenant_id, location_id=locationId, product_id=productId, take=take
    )
    items = [stock_service.serialize_balance(b) for b in rows]
    return ok(items, meta=list_meta(items))


@router.get("/reservations")
def list_reservations(
    balanceId: str = Query(..., min_length=1),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    items = stock_service.list_reservations(db, tenant_id=ctx.tenant_id, balance_id=balanceId)
    return ok(items, meta=list_meta(items))


@router.get("/expiry/summary")
def expiry_summary(
    status_filter: Optional[Literal["EXPIRED", "RED", "YELLOW", "GREEN"]] = Query(None, alias="status"),
    daysToExpireMax: Optional[int] = Query(None, ge=0, le=3650),
    warehouseId: Optional[str] = None,
    take: int = Query(100, ge=1, le=200),
    cursor: Optional[str] = None,
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    result = stock_service.expiry_summary(
        db,
        tenant_id=ctx.tenant_id,
        status_filter=status_filter,
        days_to_expire_max=daysToExpireMax,
        warehouse_id=warehouseId,
        take=take,
        cursor=cursor,
    )
    return ok(result, meta=list_meta(result["items"], next_cursor=result["nextCursor"]))


@router.get("/fefo-suggestions")
def fefo_suggestions(
    productId: str = Query(..., min_length=1),
    locationId: Optional[str] = None,
    warehouseId: Optional[str] = None,
    take: int = Query(10, ge=1, le=50),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    items = stock_service.fefo_suggestions(
        db, tenant_id=ctx.tenant_id, product_id=productId, location_id=locationId, warehouse_id=warehouseId, take=take
    )
    return ok(items, meta=list_meta(items))


# ---- Movement requests ----
@router.post("/movement-requests", status_code=status.HTTP_201_CREATED)
def create_request(payload: MovementRequestCreate, ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    req = movement_request_service.create_request(db, actor=ctx, payload=payload)
    return ok(movement_request_service.serialize_request(req), status_code=status.HTTP_201_CREATED)


@router.get("/movement-requests")
def list_requests(
    status_filter: Optional[Literal["OPEN", "FULFILLED", "CANCELLED"]] = Query(None, alias="status"),
    city: Optional[str] = Query(None, max_length=120),
    take: int = Query(50, ge=1, le=200),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows = movement_request_service.list_requests(db, actor=ctx, status_filter=status_filter, city=city, take=take)
    items = [movement_request_service.serialize_request(r) for r in rows]
    return ok(items, meta=list_meta(items))


@router.post("/movement-requests/bulk-fulfill", status_code=status.HTTP_201_CREATED)
def bulk_fulfill(payload: BulkFulfillRequest, ctx: AuthContext = Depends(Mover), db: Session = Depends(get_db)):
    result = movement_request_service.bulk_fulfill(db, actor=ctx, payload=payload)
    return ok(result, status_code=status.HTTP_201_CREATED)


@router.patch("/movement-requests/{request_id}/confirm")
def confirm_request(
    payload: RequestConfirm,
    request_id: str = Path(...),
    ctx: AuthContext = Depends(require_permission(STOCK_READ, SCOPE_BRANCH)),
    db: Session = Depends(get_db),
):
    req = movement_request_service.confirm_request(
        db, actor=ctx, request_id=request_id, action=payload.action, note=payload.note
    )
    return ok(movement_request_service.serialize_request(req))


@router.post("/movement-requests/{request_id}/cancel")
def cancel_request(request_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    req = movement_request_service.cancel_request(db, actor=ctx, request_id=request_id)
    return ok(movement_request_service.serialize_request(req))


# ---- Returns ----
@router.post("/returns", status_code=status.HTTP_201_CREATED)
def create_return(
    payload: ReturnCreate,
    ctx: AuthContext = Depends(require_permission(STOCK_MANAGE)),
    db: Session = Depends(get_db),
):
    ret = return_service.create_return(db, actor=ctx, payload=payload)
    return ok(return_service.serialize_return(ret), status_code=status.HTTP_201_CREATED)


@router.get("/returns")
def list_returns(
    warehouseId: Optional[str] = None,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    take: int = Query(50, ge=1, le=200),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows = return_service.list_returns(
        db, actor=ctx, warehouse_id=warehouseId, date_from=date_from, date_to=date_to, take=take
    )
    items = [return_service.serialize_return(r) for r in rows]
    return ok(items, meta=list_meta(items))
