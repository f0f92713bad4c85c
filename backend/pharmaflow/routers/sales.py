# backend/pharmaflow/routers/sales.py
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_module, require_permission
from ..domain.constants import (
    MODULE_SALES, MODULE_WAREHOUSE, SALES_DELIVERY_READ, SALES_DELIVERY_WRITE, SALES_ORDER_READ, SALES_ORDER_WRITE,
    STOCK_DELIVER, STOCK_MOVE,
)
from ..schemas.sales import (
    DeliverBody, DeliveryStatusLiteral, FulfillBody, OrderCreate, PaymentStatusLiteral, QuoteIn, VersionBody,
)
from ..services import payment_service, quote_service, sales_order_service

router = APIRouter(
    prefix="/api/v1/sales",
    tags=["sales"],
    dependencies=[Depends(require_module(MODULE_SALES))],
)

Reader = require_permission(SALES_ORDER_READ)
Writer = require_permission(SALES_ORDER_WRITE)


def _shortage_meta(shortages):
    return {"shortages": shortages} if shortages else None


# =========================
# Quotes
# =========================
@router.get("/quotes")
def list_quotes(
    customerSearch: Optional[str] = Query(None, max_length=200),
    cursor: Optional[str] = None,
    take: int = Query(20, ge=1, le=50),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows, next_cursor = quote_service.list_quotes(
        db, tenant_id=ctx.tenant_id, customer_search=customerSearch, cursor=cursor, take=take
    )
    items = [quote_service.serialize_quote(q, with_lines=False) for q in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.post("/quotes", status_code=status.HTTP_201_CREATED)
def create_quote(payload: QuoteIn, ctx: AuthContext = Depends(Writer), db: Session = Depends(get_db)):
    q = quote_service.create_quote(db, actor=ctx, payload=payload)
    return ok(quote_service.serialize_quote(q), status_code=status.HTTP_201_CREATED)


@router.get("/quotes/{quote_id}")
def get_quote(quote_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    return ok(quote_service.serialize_quote(quote_service.get_quote(db, tenant_id=ctx.tenant_id, quote_id=quote_id)))


@router.put("/quotes/{quote_id}")
def update_quote(
    payload: QuoteIn,
    quote_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    q = quote_service.update_quote(db, actor=ctx, quote_id=quote_id, payload=payload)
    return ok(quote_service.serialize_quote(q))


@router.delete("/quotes/{quote_id}")
def delete_quote(quote_id: str = Path(...), ctx: AuthContext = Depends(Writer), db: Session = Depends(get_db)):
    quote_service.delete_quote(db, actor=ctx, quote_id=quote_id)
    return ok({"id": quote_id, "deleted": True})


@router.post("/quotes/{quote_id}/process", status_code=status.HTTP_201_CREATED)
def process_quote(quote_id: str = Path(...), ctx: AuthContext = Depends(Writer), db: Session = Depends(get_db)):
    order, shortages = quote_service.process_quote(db, actor=ctx, quote_id=quote_id)
    return ok(
        sales_order_service.serialize_order(order, detail=True),
        meta=_shortage_meta(shortages),
        status_code=status.HTTP_201_CREATED,
    )


# =========================
# Orders
# =========================
@router.post("/orders", status_code=status.HTTP_201_CREATED)
def create_order(payload: OrderCreate, ctx: AuthContext = Depends(Writer), db: Session = Depends(get_db)):
    o = sales_order_service.create_order(db, actor=ctx, payload=payload)
    return ok(sales_order_service.serialize_order(o, detail=True), status_code=status.HTTP_201_CREATED)


@router.get("/orders")
def list_orders(
    status_filter: Optional[Literal["DRAFT", "CONFIRMED", "FULFILLED", "CANCELLED"]] = Query(None, alias="status"),
    cursor: Optional[str] = None,
    take: int = Query(20, ge=1, le=50),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows, next_cursor = sales_order_service.list_orders(
        db, actor=ctx, status_filter=status_filter, cursor=cursor, take=take
    )
    items = [sales_order_service.serialize_order(o) for o in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.get("/orders/{order_id}")
def get_order(order_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    o = sales_order_service.get_order(db, actor=ctx, order_id=order_id)
    return ok(sales_order_service.serialize_order(o, detail=True))


@router.post("/orders/{order_id}/confirm")
def confirm_order(
    payload: VersionBody,
    order_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    o, shortages = sales_order_service.confirm_order(db, actor=ctx, order_id=order_id, version=payload.version)
    return ok(sales_order_service.serialize_order(o, detail=True), meta=_shortage_meta(shortages))


@router.post("/orders/{order_id}/fulfill", dependencies=[Depends(require_module(MODULE_WAREHOUSE))])
def fulfill_order(
    payload: FulfillBody,
    order_id: str = Path(...),
    ctx: AuthContext = Depends(require_permission(SALES_ORDER_WRITE, STOCK_MOVE)),
    db: Session = Depends(get_db),
):
    o = sales_order_service.fulfill_order(
        db, actor=ctx, order_id=order_id, from_location_id=payload.fromLocationId,
        version=payload.version, note=payload.note,
    )
    return ok(sales_order_service.serialize_order(o, detail=True))


@router.post("/orders/{order_id}/cancel")
def cancel_order(
    payload: VersionBody,
    order_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    o = sales_order_service.cancel_order(db, actor=ctx, order_id=order_id, version=payload.version)
    return ok(sales_order_service.serialize_order(o, detail=True))


# =========================
# Deliveries
# =========================
@router.get("/deliveries")
def list_deliveries(
    status_filter: DeliveryStatusLiteral = Query("PENDING", alias="status"),
    cities: Optional[str] = Query(None, max_length=1000),
    take: int = Query(50, ge=1, le=200),
    ctx: AuthContext = Depends(require_permission(SALES_DELIVERY_READ)),
    db: Session = Depends(get_db),
):
    rows = sales_order_service.list_deliveries(db, actor=ctx, status_filter=status_filter, cities=cities, take=take)
    items = [sales_order_service.serialize_delivery(o) for o in rows]
    return ok(items, meta=list_meta(items))


@router.post("/deliveries/{order_id}/deliver")
def deliver_order(
    payload: DeliverBody,
    order_id: str = Path(...),
    ctx: AuthContext = Depends(require_permission(SALES_DELIVERY_WRITE, STOCK_DELIVER)),
    db: Session = Depends(get_db),
):
    o = sales_order_service.deliver_order(db, actor=ctx, order_id=order_id, version=payload.version, note=payload.note)
    return ok(sales_order_service.serialize_order(o, detail=True))


# =========================
# Payments
# =========================
@router.get("/payments")
def list_payments(
    status_filter: PaymentStatusLiteral = Query("DUE", alias="status"),
    take: int = Query(100, ge=1, le=200),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows = payment_service.list_payments(db, actor=ctx, status_filter=status_filter, take=take)
    items = [payment_service.serialize_receivable(o) for o in rows]
    return ok(items, meta=list_meta(items))


@router.post("/payments/{order_id}/pay")
def mark_paid(
    payload: VersionBody,
    order_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    o = payment_service.mark_paid(db, actor=ctx, order_id=order_id, version=payload.version)
    return ok(payment_service.serialize_receivable(o))
