"""
Sales orders: creation, confirmation with FEFO reservations, fulfilment
from one location, cancellation and delivery of reserved stock.

Status flow: DRAFT -> CONFIRMED -> FULFILLED, with CANCELLED reachable from
DRAFT and CONFIRMED. Every stock decrease goes through create_stock_movement
with referenceType SALES_ORDER and the order number as reference.
"""
import logging
from collections import defaultdict
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from fastapi import HTTPException, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from ..core.api import num
from ..core.clock import iso, utc_today, utcnow
from ..core.errors import StockError
from ..domain.constants import REF_SALES_ORDER, SEQ_SALES_ORDER
from ..models import (
    Batch, Customer, InventoryBalance, Location, Product, SalesOrder, SalesOrderLine, SalesOrderReservation,
)
from . import audit_service
from .common import (
    branch_scope, bump_version, check_version, get_scoped, keyset_page, lock_scoped, to_money, to_qty, transaction,
)
from .sequence_service import next_sequence
from .stock_service import (
    active_reservations, batch_is_expired, create_stock_movement, expired_batch_error, record_expiry_block,
    release_reservations, reserve_fefo, serialize_reservation,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


def order_total(order: SalesOrder) -> Decimal:
    return to_money(sum(((l.Quantity or ZERO) * (l.UnitPrice or ZERO) for l in order.lines), ZERO))


def serialize_order(o: SalesOrder, detail: bool = False) -> Dict[str, Any]:
    out = {
        "id": o.SalesOrderID,
        "number": o.Number,
        "status": o.Status,
        "customerId": o.CustomerID,
        "customerName": o.customer.Name if o.customer else None,
        "quoteId": o.QuoteID,
        "note": o.Note,
        "paymentMode": o.PaymentMode,
        "deliveryDate": iso(o.DeliveryDate),
        "deliveredAt": iso(o.DeliveredAt),
        "paidAt": iso(o.PaidAt),
        "deliveryAddress": o.DeliveryAddress,
        "deliveryCity": o.DeliveryCity,
        "deliveryZone": o.DeliveryZone,
        "deliveryMapsUrl": o.DeliveryMapsUrl,
        "total": num(order_total(o)),
        "version": o.Version,
        "createdAt": iso(o.CreatedAt),
        "updatedAt": iso(o.UpdatedAt),
    }
    if detail:
        out["customer"] = (
            {"id": o.customer.CustomerID, "name": o.customer.Name, "nit": o.customer.Nit} if o.customer else None
        )
        out["lines"] = [
            {
                "id": l.SalesOrderLineID,
                "productId": l.ProductID,
                "productName": l.product.Name if l.product else None,
                "productSku": l.product.Sku if l.product else None,
                "batchId": l.BatchID,
                "batchNumber": l.batch.BatchNumber if l.batch else None,
                "quantity": num(l.Quantity),
                "unitPrice": num(l.UnitPrice),
                "total": num(to_money((l.Quantity or ZERO) * (l.UnitPrice or ZERO))),
            }
            for l in o.lines
        ]
        out["reservations"] = [serialize_reservation(r) for r in o.reservations if r.ReleasedAt is None]
    return out


def _load(db: Session, tenant_id: str, order_id: str) -> SalesOrder:
    o = (
        db.query(SalesOrder)
        .options(
            selectinload(SalesOrder.lines).selectinload(SalesOrderLine.product),
            selectinload(SalesOrder.lines).selectinload(SalesOrderLine.batch),
            selectinload(SalesOrder.reservations).selectinload(SalesOrderReservation.balance),
            selectinload(SalesOrder.customer),
        )
        .filter(SalesOrder.SalesOrderID == order_id, SalesOrder.TenantID == tenant_id)
        .first()
    )
    if not o:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sales order not found")
    return o


def _lock_order(db: Session, actor, order_id: str) -> SalesOrder:
    o = lock_scoped(db, SalesOrder, SalesOrder.SalesOrderID, order_id, actor.tenant_id, "Sales order not found")
    scoped = branch_scope(actor)
    if scoped and (o.DeliveryCity or "").strip().upper() != scoped:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    return o


def _reserve_lines(db: Session, actor, order: SalesOrder) -> List[Dict[str, Any]]:
    warehouse_id = actor.warehouse_id if branch_scope(actor) else None
    shortages = []
    for line in order.lines:
        missing = reserve_fefo(
            db,
            tenant_id=actor.tenant_id,
            order_id=order.SalesOrderID,
            line_id=line.SalesOrderLineID,
            product_id=line.ProductID,
            quantity=line.Quantity,
            batch_id=line.BatchID,
            warehouse_id=warehouse_id,
        )
        if missing > 0:
            shortages.append({"lineId": line.SalesOrderLineID, "productId": line.ProductID, "missing": num(missing)})
    return shortages


# ---- Orders ----
def create_order(db: Session, *, actor, payload) -> SalesOrder:
    customer = get_scoped(db, Customer, payload.customerId, actor.tenant_id, "Customer not found")
    scoped = branch_scope(actor)
    if scoped and (customer.City or "").strip().upper() != scoped:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
    lines = payload.lines or []
    products: Dict[str, Product] = {}
    if lines:
        ids = {l.productId for l in lines}
        products = {
            p.ProductID: p
            for p in db.query(Product).filter(Product.TenantID == actor.tenant_id, Product.ProductID.in_(ids)).all()
        }
        if len(products) != len(ids):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")
        for l in lines:
            if l.batchId:
                b = db.get(Batch, l.batchId)
                if not b or b.TenantID != actor.tenant_id or b.ProductID != l.productId:
                    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    with transaction(db, "create_sales_order"):
        seq = next_sequence(db, actor.tenant_id, SEQ_SALES_ORDER)
        order = SalesOrder(
            TenantID=actor.tenant_id,
            Number=seq["number"],
            CustomerID=customer.CustomerID,
            Status="DRAFT",
            Note=payload.note,
            PaymentMode=payload.paymentMode or "CASH",
            DeliveryDate=payload.deliveryDate,
            DeliveryAddress=customer.Address,
            DeliveryCity=(customer.City or "").strip().upper() or None,
            DeliveryZone=customer.Zone,
            DeliveryMapsUrl=customer.MapsUrl,
            CreatedBy=actor.user_id,
        )
        for l in lines:
            price = l.unitPrice if l.unitPrice is not None else (products[l.productId].Price or ZERO)
            order.lines.append(SalesOrderLine(
                TenantID=actor.tenant_id,
                ProductID=l.productId,
                BatchID=l.batchId,
                Quantity=to_qty(l.quantity),
                UnitPrice=to_money(price),
            ))
        db.add(order)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.order.create", entity_type="SalesOrder", entity_id=order.SalesOrderID,
            after={"number": order.Number, "customerId": order.CustomerID, "lines": len(lines)},
        )
    return _load(db, actor.tenant_id, order.SalesOrderID)


def list_orders(db: Session, *, actor, status_filter: Optional[str], cursor: Optional[str], take: int):
    q = (
        db.query(SalesOrder)
        .options(selectinload(SalesOrder.lines), selectinload(SalesOrder.customer))
        .filter(SalesOrder.TenantID == actor.tenant_id)
    )
    scoped = branch_scope(actor)
    if scoped:
        q = q.filter(func.upper(SalesOrder.DeliveryCity) == scoped)
    if status_filter:
        q = q.filter(SalesOrder.Status == status_filter)
    return keyset_page(db, q, SalesOrder, SalesOrder.CreatedAt, SalesOrder.SalesOrderID, cursor=cursor, take=take)


def get_order(db: Session, *, actor, order_id: str) -> SalesOrder:
    o = _load(db, actor.tenant_id, order_id)
    scoped = branch_scope(actor)
    if scoped and (o.DeliveryCity or "").strip().upper() != scoped:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sales order not found")
    return o


def confirm_order(db: Session, *, actor, order_id: str, version: int) -> Tuple[SalesOrder, List[Dict[str, Any]]]:
    shortages: List[Dict[str, Any]] = []
    with transaction(db, "confirm_sales_order"):
        o = _lock_order(db, actor, order_id)
        if o.Status != "CONFIRMED":
            if o.Status != "DRAFT":
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only DRAFT orders can be confirmed")
            check_version(o, version)
            shortages = _reserve_lines(db, actor, o)
            o.Status = "CONFIRMED"
            bump_version(o)
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="sales.order.confirm", entity_type="SalesOrder", entity_id=o.SalesOrderID,
                before={"status": "DRAFT"}, after={"status": "CONFIRMED", "shortages": shortages},
            )
    db.expire_all()
    return _load(db, actor.tenant_id, order_id), shortages


def _settle_reservations(db: Session, reservations: Sequence[SalesOrderReservation], consumed: Dict[str, Decimal]) -> None:
    """
    Closes every active reservation of a finished order. The part already
    consumed by an OUT movement was taken off ReservedQuantity by the movement;
    only the leftover is released here.
    """
    now = utcnow()
    for r in reservations:
        used = min(r.Quantity, consumed.get(r.InventoryBalanceID, ZERO))
        consumed[r.InventoryBalanceID] = consumed.get(r.InventoryBalanceID, ZERO) - used
        leftover = to_qty(r.Quantity - used)
        if leftover > 0:
            bal = db.query(InventoryBalance).filter(InventoryBalance.BalanceID == r.InventoryBalanceID).with_for_update().one()
            bal.ReservedQuantity = max(ZERO, to_qty((bal.ReservedQuantity or ZERO) - leftover))
            bump_version(bal)
        r.ReleasedAt = now
    db.flush()


def _pick_balance(
    db: Session, tenant_id: str, location_id: str, line: SalesOrderLine, own: Dict[str, Decimal], today: date
) -> InventoryBalance:
    """
    FEFO pick at one location: dated batches not yet expired (soonest first),
    then undated batches, then the unbatched balance. The order's own
    reservations on a balance count as available to it.
    """
    qty = line.Quantity

    def fits(bal: InventoryBalance) -> bool:
        free = (bal.Quantity or ZERO) - (bal.ReservedQuantity or ZERO) + own.get(bal.BalanceID, ZERO)
        return free >= qty

    if line.BatchID:
        batch = db.get(Batch, line.BatchID)
        if batch is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
        if batch_is_expired(batch, today):
            raise expired_batch_error(batch)
        bal = (
            db.query(InventoryBalance)
            .filter(
                InventoryBalance.TenantID == tenant_id,
                InventoryBalance.LocationID == location_id,
                InventoryBalance.ProductID == line.ProductID,
                InventoryBalance.BatchID == line.BatchID,
            )
            .with_for_update()
            .first()
        )
        if bal is not None and fits(bal):
            return bal
    else:
        candidates = (
            db.query(InventoryBalance)
            .outerjoin(Batch, Batch.BatchID == InventoryBalance.BatchID)
            .filter(
                InventoryBalance.TenantID == tenant_id,
                InventoryBalance.LocationID == location_id,
                InventoryBalance.ProductID == line.ProductID,
                InventoryBalance.Quantity > 0,
                or_(
                    InventoryBalance.BatchID.is_(None),
                    (Batch.Status == "RELEASED") & or_(Batch.ExpiresAt.is_(None), Batch.ExpiresAt >= today),
                ),
            )
            .order_by(
                InventoryBalance.BatchID.is_(None),
                Batch.ExpiresAt.is_(None),
                Batch.ExpiresAt.asc(),
                InventoryBalance.BalanceID.asc(),
            )
            .with_for_update(of=InventoryBalance)
            .all()
        )
        for bal in candidates:
            if fits(bal):
                return bal
    raise StockError(
        status.HTTP_409_CONFLICT, "Insufficient stock", code="INSUFFICIENT_STOCK",
        meta={"productId": line.ProductID, "batchId": line.BatchID, "locationId": location_id},
    )


def fulfill_order(db: Session, *, actor, order_id: str, from_location_id: str, version: int, note: Optional[str] = None) -> SalesOrder:
    try:
        with transaction(db, "fulfill_sales_order"):
            o = _lock_order(db, actor, order_id)
            if o.Status != "CONFIRMED":
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only CONFIRMED orders can be fulfilled")
            check_version(o, version)
            if not o.lines:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order has no lines")
            loc = (
                db.query(Location)
                .filter(
                    Location.LocationID == from_location_id,
                    Location.TenantID == actor.tenant_id,
                    Location.IsActive.is_(True),
                )
                .first()
            )
            if not loc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")

            reservations = active_reservations(db, o.SalesOrderID)
            own: Dict[str, Decimal] = defaultdict(lambda: ZERO)
            for r in reservations:
                if r.balance.LocationID == loc.LocationID:
                    own[r.InventoryBalanceID] += r.Quantity

            today = utc_today()
            consumed: Dict[str, Decimal] = defaultdict(lambda: ZERO)
            for line in o.lines:
                bal = _pick_balance(db, actor.tenant_id, loc.LocationID, line, own, today)
                use_reserved = min(own.get(bal.BalanceID, ZERO), line.Quantity)
                create_stock_movement(
                    db,
                    tenant_id=actor.tenant_id,
                    user_id=actor.user_id,
                    type="OUT",
                    product_id=line.ProductID,
                    quantity=line.Quantity,
                    batch_id=bal.BatchID,
                    from_location_id=loc.LocationID,
                    reference_type=REF_SALES_ORDER,
                    reference_id=o.Number,
                    note=note,
                    consume_reserved=use_reserved,
                )
                own[bal.BalanceID] -= use_reserved
                consumed[bal.BalanceID] += use_reserved

            _settle_reservations(db, reservations, dict(consumed))
            o.Status = "FULFILLED"
            o.DeliveredAt = utcnow()
            bump_version(o)
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="sales.order.fulfill", entity_type="SalesOrder", entity_id=o.SalesOrderID,
                before={"status": "CONFIRMED"}, after={"status": "FULFILLED", "fromLocationId": loc.LocationID},
            )
    except StockError as e:
        if e.code == "BATCH_EXPIRED":
            record_expiry_block(db, actor=actor, err=e, operation="sales.order.fulfill", salesOrderId=order_id)
        raise
    db.expire_all()
    return _load(db, actor.tenant_id, order_id)


def cancel_order(db: Session, *, actor, order_id: str, version: int) -> SalesOrder:
    with transaction(db, "cancel_sales_order"):
        o = _lock_order(db, actor, order_id)
        if o.Status != "CANCELLED":
            if o.Status == "FULFILLED":
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="FULFILLED orders cannot be cancelled")
            check_version(o, version)
            released = release_reservations(db, active_reservations(db, o.SalesOrderID))
            before = o.Status
            o.Status = "CANCELLED"
            bump_version(o)
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="sales.order.cancel", entity_type="SalesOrder", entity_id=o.SalesOrderID,
                before={"status": before}, after={"status": "CANCELLED", "releasedReservations": released},
            )
    db.expire_all()
    return _load(db, actor.tenant_id, order_id)


# ---- Deliveries ----
def serialize_delivery(o: SalesOrder, today: Optional[date] = None) -> Dict[str, Any]:
    today = today or utc_today()
    out = serialize_order(o)
    out["deliveryDays"] = (o.DeliveryDate - today).days if o.DeliveryDate else None
    out["reservedQuantity"] = num(sum((r.Quantity for r in o.reservations if r.ReleasedAt is None), ZERO))
    return out


def list_deliveries(
    db: Session, *, actor, status_filter: str = "PENDING", cities: Optional[str] = None, take: int = 50
) -> List[SalesOrder]:
    statuses = {"PENDING": ["CONFIRMED"], "DELIVERED": ["FULFILLED"], "ALL": ["CONFIRMED", "FULFILLED"]}[status_filter]
    q = (
        db.query(SalesOrder)
        .options(
            selectinload(SalesOrder.lines),
            selectinload(SalesOrder.customer),
            selectinload(SalesOrder.reservations),
        )
        .filter(SalesOrder.TenantID == actor.tenant_id, SalesOrder.Status.in_(statuses))
    )
    scoped = branch_scope(actor)
    if scoped:
        q = q.filter(func.upper(SalesOrder.DeliveryCity) == scoped)
    elif cities:
        wanted = [c.strip().upper() for c in cities.split(",") if c.strip()]
        if wanted:
            q = q.filter(func.upper(SalesOrder.DeliveryCity).in_(wanted))
    return (
        q.order_by(SalesOrder.DeliveryDate.is_(None), SalesOrder.DeliveryDate.asc(), SalesOrder.CreatedAt.asc())
        .limit(take)
        .all()
    )


def deliver_order(db: Session, *, actor, order_id: str, version: int, note: Optional[str] = None) -> SalesOrder:
    try:
        with transaction(db, "deliver_sales_order"):
            o = _lock_order(db, actor, order_id)
            if o.Status != "CONFIRMED":
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only CONFIRMED orders can be delivered")
            check_version(o, version)
            reservations = active_reservations(db, o.SalesOrderID)
            if not reservations:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No reservations to deliver")

            now = utcnow()
            for r in reservations:
                bal = r.balance
                create_stock_movement(
                    db,
                    tenant_id=actor.tenant_id,
                    user_id=actor.user_id,
                    type="OUT",
                    product_id=bal.ProductID,
                    quantity=r.Quantity,
                    batch_id=bal.BatchID,
                    from_location_id=bal.LocationID,
                    reference_type=REF_SALES_ORDER,
                    reference_id=o.Number,
                    note=note,
                    consume_reserved=r.Quantity,
                )
                r.ReleasedAt = now

            o.Status = "FULFILLED"
            o.DeliveredAt = now
            bump_version(o)
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="sales.order.deliver", entity_type="SalesOrder", entity_id=o.SalesOrderID,
                before={"status": "CONFIRMED"},
                after={"status": "FULFILLED", "movements": len(reservations), "note": note},
            )
    except StockError as e:
        if e.code == "BATCH_EXPIRED":
            record_expiry_block(db, actor=actor, err=e, operation="sales.order.deliver", salesOrderId=order_id)
        raise
    db.expire_all()
    return _load(db, actor.tenant_id, order_id)
