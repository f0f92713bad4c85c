"""
Stock bookkeeping: movements, balances, reservations and FEFO picking.

Every write goes through create_stock_movement(), which runs inside the
caller's transaction, locks the affected InventoryBalance rows FOR UPDATE
and numbers the movement from the tenant's MS sequence.
"""
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from fastapi import HTTPException, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session, joinedload

from ..core.api import num
from ..core.clock import iso, utc_today, utcnow
from ..core.errors import StockError
from ..domain.constants import REF_BULK_TRANSFER, REF_REQUEST_BULK_FULFILL, SEQ_MOVEMENT
from ..models import (
    AppUser, Batch, InventoryBalance, Location, Product, SalesOrder, SalesOrderReservation,
    StockMovement, StockMovementRequest, StockMovementRequestItem, Warehouse,
)
from . import audit_service
from .common import to_qty, transaction
from .sequence_service import next_sequence

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

EXPIRY_RED_DAYS = 30
EXPIRY_YELLOW_DAYS = 90


# ---- Expiry semaphore ----
def days_to_expire(expires_at: date, today: Optional[date] = None) -> int:
    return (expires_at - (today or utc_today())).days


def semaphore_status(days: int) -> str:
    if days < 0:
        return "EXPIRED"
    if days <= EXPIRY_RED_DAYS:
        return "RED"
    if days <= EXPIRY_YELLOW_DAYS:
        return "YELLOW"
    return "GREEN"


def batch_is_expired(batch: Batch, today: Optional[date] = None) -> bool:
    return batch.ExpiresAt is not None and batch.ExpiresAt < (today or utc_today())


def expired_batch_error(batch: Batch) -> StockError:
    return StockError(
        status.HTTP_409_CONFLICT,
        "Batch expired",
        code="BATCH_EXPIRED",
        meta={"batchId": batch.BatchID, "batchNumber": batch.BatchNumber, "expiresAt": iso(batch.ExpiresAt)},
    )


def record_expiry_block(db: Session, *, actor, err: StockError, operation: str, **extra) -> None:
    """Audits a blocked expired-batch operation after its transaction was rolled back."""
    meta = {k: v for k, v in err.meta.items() if k != "code"}
    audit_service.append_committed(
        db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
        action="stock.expiry.blocked", entity_type="Batch", entity_id=meta.get("batchId"),
        metadata={"operation": operation, **extra, **meta},
    )


# ---- Serializers ----
def serialize_balance(b: Optional[InventoryBalance]) -> Optional[Dict[str, Any]]:
    if b is None:
        return None
    qty = b.Quantity or ZERO
    reserved = b.ReservedQuantity or ZERO
    return {
        "id": b.BalanceID,
        "locationId": b.LocationID,
        "productId": b.ProductID,
        "batchId": b.BatchID,
        "quantity": num(qty),
        "reservedQuantity": num(reserved),
        "availableQuantity": num(max(ZERO, qty - reserved)),
        "version": b.Version,
        "updatedAt": iso(b.UpdatedAt),
    }


def serialize_movement(m: StockMovement) -> Dict[str, Any]:
    return {
        "id": m.MovementID,
        "number": m.Number,
        "numberYear": m.NumberYear,
        "type": m.Type,
        "productId": m.ProductID,
        "batchId": m.BatchID,
        "fromLocationId": m.FromLocationID,
        "toLocationId": m.ToLocationID,
        "quantity": num(m.Quantity),
        "referenceType": m.ReferenceType,
        "referenceId": m.ReferenceID,
        "note": m.Note,
        "createdAt": iso(m.CreatedAt),
    }


@dataclass
class MovementResult:
    movement: StockMovement
    from_balance: Optional[InventoryBalance] = None
    to_balance: Optional[InventoryBalance] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "createdMovement": serialize_movement(self.movement),
            "fromBalance": serialize_balance(self.from_balance),
            "toBalance": serialize_balance(self.to_balance),
        }


# ---- Core movement ----
def _balance_query(db: Session, tenant_id: str, location_id: str, product_id: str, batch_id: Optional[str]):
    q = db.query(InventoryBalance).filter(
        InventoryBalance.TenantID == tenant_id,
        InventoryBalance.LocationID == location_id,
        InventoryBalance.ProductID == product_id,
    )
    if batch_id is None:
        return q.filter(InventoryBalance.BatchID.is_(None))
    return q.filter(InventoryBalance.BatchID == batch_id)


def lock_balance(db: Session, tenant_id: str, location_id: str, product_id: str, batch_id: Optional[str]):
    return _balance_query(db, tenant_id, location_id, product_id, batch_id).with_for_update().first()


def _apply_delta(
    db: Session,
    *,
    tenant_id: str,
    location_id: str,
    product_id: str,
    batch_id: Optional[str],
    delta: Decimal,
    consume_reserved: Decimal = ZERO,
) -> InventoryBalance:
    bal = lock_balance(db, tenant_id, location_id, product_id, batch_id)
    current = bal.Quantity if bal is not None else ZERO
    reserved = (bal.ReservedQuantity or ZERO) if bal is not None else ZERO
    next_qty = to_qty(current + delta)
    next_reserved = max(ZERO, to_qty(reserved - consume_reserved))

    if next_qty < 0:
        raise StockError(
            status.HTTP_409_CONFLICT, "Insufficient stock", code="INSUFFICIENT_STOCK",
            meta={"locationId": location_id, "productId": product_id, "batchId": batch_id, "available": num(current)},
        )
    if delta < 0 and next_qty < next_reserved:
        raise StockError(
            status.HTTP_409_CONFLICT, "Insufficient stock", code="STOCK_RESERVED",
            meta={
                "locationId": location_id, "productId": product_id, "batchId": batch_id,
                "available": num(max(ZERO, current - reserved)),
            },
        )

    if bal is None:
        bal = InventoryBalance(
            TenantID=tenant_id,
            LocationID=location_id,
            ProductID=product_id,
            BatchID=batch_id,
            Quantity=next_qty,
            ReservedQuantity=ZERO,
        )
        db.add(bal)
    else:
        bal.Quantity = next_qty
        bal.ReservedQuantity = next_reserved
        bal.Version = int(bal.Version or 0) + 1
    db.flush()
    return bal


def _ensure_location(db: Session, tenant_id: str, location_id: str) -> Location:
    loc = (
        db.query(Location)
        .filter(Location.LocationID == location_id, Location.TenantID == tenant_id, Location.IsActive.is_(True))
        .first()
    )
    if not loc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")
    return loc


def create_stock_movement(
    db: Session,
    *,
    tenant_id: str,
    user_id: Optional[str],
    type: str,
    product_id: str,
    quantity,
    batch_id: Optional[str] = None,
    from_location_id: Optional[str] = None,
    to_location_id: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    note: Optional[str] = None,
    consume_reserved=None,
) -> MovementResult:
    """Runs inside the caller's transaction; never commits."""
    qty = to_qty(quantity)
    if qty <= 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="quantity must be positive")

    if type == "IN" and not to_location_id:
        raise HTTPException(status_code=400, detail="toLocationId is required")
    if type == "OUT" and not from_location_id:
        raise HTTPException(status_code=400, detail="fromLocationId is required")
    if type == "TRANSFER" and not (from_location_id and to_location_id):
        raise HTTPException(status_code=400, detail="fromLocationId and toLocationId are required")
    if type == "ADJUSTMENT" and bool(from_location_id) == bool(to_location_id):
        raise HTTPException(status_code=400, detail="Exactly one of fromLocationId or toLocationId is required")
    if type not in ("IN", "OUT", "TRANSFER", "ADJUSTMENT"):
        raise HTTPException(status_code=400, detail="Invalid movement type")

    product = (
        db.query(Product)
        .filter(Product.ProductID == product_id, Product.TenantID == tenant_id, Product.IsActive.is_(True))
        .first()
    )
    if not product:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    batch = None
    if batch_id:
        batch = (
            db.query(Batch)
            .filter(Batch.BatchID == batch_id, Batch.TenantID == tenant_id, Batch.ProductID == product_id)
            .first()
        )
        if not batch:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")

    decreases = type in ("OUT", "TRANSFER") or (type == "ADJUSTMENT" and not to_location_id)
    if decreases and batch is not None and batch_is_expired(batch):
        raise expired_batch_error(batch)

    if type in ("IN", "OUT"):
        # IN/OUT carry a single side
        from_location_id = from_location_id if type == "OUT" else None
        to_location_id = to_location_id if type == "IN" else None
    if from_location_id:
        _ensure_location(db, tenant_id, from_location_id)
    if to_location_id:
        _ensure_location(db, tenant_id, to_location_id)

    consume = to_qty(consume_reserved) if consume_reserved else ZERO
    kw = dict(tenant_id=tenant_id, product_id=product_id, batch_id=batch_id)
    from_balance = to_balance = None
    if type == "IN":
        to_balance = _apply_delta(db, location_id=to_location_id, delta=qty, **kw)
    elif type == "OUT":
        from_balance = _apply_delta(db, location_id=from_location_id, delta=-qty, consume_reserved=consume, **kw)
    elif type == "TRANSFER":
        from_balance = _apply_delta(db, location_id=from_location_id, delta=-qty, consume_reserved=consume, **kw)
        to_balance = _apply_delta(db, location_id=to_location_id, delta=qty, **kw)
    elif to_location_id:
        to_balance = _apply_delta(db, location_id=to_location_id, delta=qty, **kw)
    else:
        from_balance = _apply_delta(db, location_id=from_location_id, delta=-qty, **kw)

    seq = next_sequence(db, tenant_id, SEQ_MOVEMENT)
    movement = StockMovement(
        TenantID=tenant_id,
        Number=seq["number"],
        NumberYear=seq["year"],
        Type=type,
        ProductID=product_id,
        BatchID=batch_id,
        FromLocationID=from_location_id,
        ToLocationID=to_location_id,
        Quantity=qty,
        ReferenceType=reference_type,
        ReferenceID=reference_id,
        Note=note,
        CreatedBy=user_id,
    )
    db.add(movement)
    db.flush()
    return MovementResult(movement=movement, from_balance=from_balance, to_balance=to_balance)


# ---- Movement requests allocation ----
def allocate_to_request_items(db: Session, items: Iterable[StockMovementRequestItem], quantity: Decimal) -> Set[str]:
    """FIFO over the given items; returns the ids of the touched requests."""
    remaining = to_qty(quantity)
    touched: Set[str] = set()
    for it in items:
        if remaining <= 0:
            break
        rem = it.RemainingQuantity or ZERO
        if rem <= 0:
            continue
        apply = min(rem, remaining)
        it.RemainingQuantity = to_qty(rem - apply)
        remaining -= apply
        touched.add(it.RequestID)
    db.flush()
    return touched


def close_fulfilled_requests(db: Session, tenant_id: str, request_ids: Iterable[str], user_id: Optional[str]) -> List[str]:
    fulfilled = []
    for rid in request_ids:
        left = (
            db.query(func.coalesce(func.sum(StockMovementRequestItem.RemainingQuantity), 0))
            .filter(StockMovementRequestItem.TenantID == tenant_id, StockMovementRequestItem.RequestID == rid)
            .scalar()
        )
        if Decimal(str(left or 0)) <= 0:
            req = db.get(StockMovementRequest, rid)
            req.Status = "FULFILLED"
            req.FulfilledAt = utcnow()
            req.FulfilledBy = user_id
            fulfilled.append(rid)
    db.flush()
    return fulfilled


def apply_transfer_to_open_requests(db: Session, *, tenant_id: str, user_id: Optional[str], movement: StockMovement) -> List[str]:
    """A TRANSFER into a city's warehouse pays down that city's OPEN requests, oldest first."""
    loc = db.get(Location, movement.ToLocationID) if movement.ToLocationID else None
    city = ((loc.warehouse.City if loc and loc.warehouse else None) or "").strip().upper()
    if not city:
        return []
    items = (
        db.query(StockMovementRequestItem)
        .join(StockMovementRequest, StockMovementRequest.RequestID == StockMovementRequestItem.RequestID)
        .filter(
            StockMovementRequestItem.TenantID == tenant_id,
            StockMovementRequestItem.ProductID == movement.ProductID,
            StockMovementRequestItem.RemainingQuantity > 0,
            StockMovementRequest.Status == "OPEN",
            func.upper(StockMovementRequest.RequestedCity) == city,
        )
        .order_by(StockMovementRequest.CreatedAt.asc(), StockMovementRequestItem.CreatedAt.asc())
        .with_for_update(of=StockMovementRequestItem)
        .all()
    )
    touched = allocate_to_request_items(db, items, movement.Quantity)
    return close_fulfilled_requests(db, tenant_id, sorted(touched), user_id)


# ---- Endpoint operations ----
def create_movement(db: Session, *, actor, payload) -> Dict[str, Any]:
    try:
        with transaction(db, "create_stock_movement"):
            result = create_stock_movement(
                db,
                tenant_id=actor.tenant_id,
                user_id=actor.user_id,
                type=payload.type,
                product_id=payload.productId,
                quantity=payload.quantity,
                batch_id=payload.batchId,
                from_location_id=payload.fromLocationId,
                to_location_id=payload.toLocationId,
                reference_type=payload.referenceType,
                reference_id=payload.referenceId,
                note=payload.note,
            )
            fulfilled: List[str] = []
            skip_auto = (payload.referenceType or "").upper() == REF_REQUEST_BULK_FULFILL
            if payload.type == "TRANSFER" and not skip_auto:
                fulfilled = apply_transfer_to_open_requests(
                    db, tenant_id=actor.tenant_id, user_id=actor.user_id, movement=result.movement
                )
            out = result.as_dict()
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="stock.movement.create", entity_type="StockMovement", entity_id=result.movement.MovementID,
                after={"movement": out["createdMovement"], "fromBalance": out["fromBalance"], "toBalance": out["toBalance"]},
            )
    except StockError as e:
        if e.code == "BATCH_EXPIRED":
            record_expiry_block(db, actor=actor, err=e, operation="stock.movement.create", movementType=payload.type)
        raise
    out["fulfilledRequestIds"] = fulfilled
    return out


def bulk_transfer(db: Session, *, actor, payload) -> Dict[str, Any]:
    reference_id = str(uuid.uuid4())
    results: List[MovementResult] = []
    try:
        with transaction(db, "bulk_transfer"):
            base_from = _ensure_location(db, actor.tenant_id, payload.fromLocationId)
            base_to = _ensure_location(db, actor.tenant_id, payload.toLocationId)
            if payload.fromWarehouseId and payload.fromWarehouseId != base_from.WarehouseID:
                raise HTTPException(status_code=400, detail="fromLocationId does not belong to fromWarehouseId")
            if payload.toWarehouseId and payload.toWarehouseId != base_to.WarehouseID:
                raise HTTPException(status_code=400, detail="toLocationId does not belong to toWarehouseId")
            for it in payload.items:
                results.append(create_stock_movement(
                    db,
                    tenant_id=actor.tenant_id,
                    user_id=actor.user_id,
                    type="TRANSFER",
                    product_id=it.productId,
                    quantity=it.quantity,
                    batch_id=it.batchId,
                    from_location_id=it.fromLocationId or payload.fromLocationId,
                    to_location_id=it.toLocationId or payload.toLocationId,
                    reference_type=REF_BULK_TRANSFER,
                    reference_id=reference_id,
                    note=it.note or payload.note,
                ))
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="stock.bulk-transfer.create", entity_type="StockMovement", entity_id=reference_id,
                after={"referenceType": REF_BULK_TRANSFER, "referenceId": reference_id, "count": len(results)},
            )
    except StockError as e:
        if e.code == "BATCH_EXPIRED":
            record_expiry_block(db, actor=actor, err=e, operation="stock.bulk-transfer.create")
        raise
    return {
        "referenceType": REF_BULK_TRANSFER,
        "referenceId": reference_id,
        "items": [r.as_dict() for r in results],
    }


def list_balances(
    db: Session, *, tenant_id: str, location_id: Optional[str], product_id: Optional[str], take: int = 100
) -> List[InventoryBalance]:
    q = db.query(InventoryBalance).filter(InventoryBalance.TenantID == tenant_id)
    if location_id:
        q = q.filter(InventoryBalance.LocationID == location_id)
    if product_id:
        q = q.filter(InventoryBalance.ProductID == product_id)
    return q.order_by(InventoryBalance.UpdatedAt.desc(), InventoryBalance.BalanceID.desc()).limit(take).all()


def list_reservations(db: Session, *, tenant_id: str, balance_id: str) -> List[Dict[str, Any]]:
    rows = (
        db.query(SalesOrderReservation)
        .options(joinedload(SalesOrderReservation.order).joinedload(SalesOrder.customer))
        .filter(
            SalesOrderReservation.TenantID == tenant_id,
            SalesOrderReservation.InventoryBalanceID == balance_id,
            SalesOrderReservation.ReleasedAt.is_(None),
        )
        .order_by(SalesOrderReservation.CreatedAt.desc())
        .all()
    )
    seller_ids = {r.order.CreatedBy for r in rows if r.order.CreatedBy}
    sellers = {}
    if seller_ids:
        for u in db.query(AppUser).filter(AppUser.TenantID == tenant_id, AppUser.UserID.in_(seller_ids)).all():
            sellers[u.UserID] = u.FullName or u.Email

    today = utc_today()
    out = []
    for r in rows:
        order = r.order
        delivery = order.DeliveryDate
        out.append({
            "id": r.ReservationID,
            "seller": sellers.get(order.CreatedBy, "Unknown"),
            "client": order.customer.Name if order.customer else None,
            "order": order.Number,
            "quantity": num(r.Quantity),
            "deliveryDays": (delivery - today).days if delivery else 0,
            "deliveryDate": iso(delivery),
            "productName": r.line.product.Name if r.line and r.line.product else None,
        })
    return out


def _expiry_bounds(status_filter: Optional[str], today: date):
    red_end = today + timedelta(days=EXPIRY_RED_DAYS + 1)
    yellow_end = today + timedelta(days=EXPIRY_YELLOW_DAYS + 1)
    return {
        "EXPIRED": (None, today),
        "RED": (today, red_end),
        "YELLOW": (red_end, yellow_end),
        "GREEN": (yellow_end, None),
    }.get(status_filter or "", (None, None))


def expiry_summary(
    db: Session,
    *,
    tenant_id: str,
    status_filter: Optional[str] = None,
    days_to_expire_max: Optional[int] = None,
    warehouse_id: Optional[str] = None,
    take: int = 100,
    cursor: Optional[str] = None,
) -> Dict[str, Any]:
    today = utc_today()
    q = (
        db.query(InventoryBalance, Batch, Product, Location, Warehouse)
        .join(Batch, Batch.BatchID == InventoryBalance.BatchID)
        .join(Product, Product.ProductID == InventoryBalance.ProductID)
        .join(Location, Location.LocationID == InventoryBalance.LocationID)
        .join(Warehouse, Warehouse.WarehouseID == Location.WarehouseID)
        .filter(
            InventoryBalance.TenantID == tenant_id,
            InventoryBalance.Quantity > 0,
            Batch.ExpiresAt.isnot(None),
        )
    )
    lo, hi = _expiry_bounds(status_filter, today)
    if lo is not None:
        q = q.filter(Batch.ExpiresAt >= lo)
    if hi is not None:
        q = q.filter(Batch.ExpiresAt < hi)
    if days_to_expire_max is not None:
        q = q.filter(Batch.ExpiresAt <= today + timedelta(days=days_to_expire_max))
    if warehouse_id:
        q = q.filter(Location.WarehouseID == warehouse_id)

    if cursor:
        anchor = (
            db.query(Batch.ExpiresAt)
            .join(InventoryBalance, InventoryBalance.BatchID == Batch.BatchID)
            .filter(InventoryBalance.BalanceID == cursor)
            .first()
        )
        if anchor is not None:
            q = q.filter(or_(
                Batch.ExpiresAt > anchor[0],
                (Batch.ExpiresAt == anchor[0]) & (InventoryBalance.BalanceID > cursor),
            ))

    rows = q.order_by(Batch.ExpiresAt.asc(), InventoryBalance.BalanceID.asc()).limit(take + 1).all()
    next_cursor = None
    if len(rows) > take:
        rows = rows[:take]
        next_cursor = rows[-1][0].BalanceID

    items = []
    for bal, batch, product, loc, wh in rows:
        d = days_to_expire(batch.ExpiresAt, today)
        qty = bal.Quantity or ZERO
        reserved = bal.ReservedQuantity or ZERO
        items.append({
            "balanceId": bal.BalanceID,
            "productId": product.ProductID,
            "sku": product.Sku,
            "name": product.Name,
            "genericName": product.GenericName,
            "batchId": batch.BatchID,
            "batchNumber": batch.BatchNumber,
            "expiresAt": iso(batch.ExpiresAt),
            "daysToExpire": d,
            "status": semaphore_status(d),
            "quantity": num(qty),
            "reservedQuantity": num(reserved),
            "availableQuantity": num(max(ZERO, qty - max(ZERO, reserved))),
            "warehouseId": wh.WarehouseID,
            "warehouseCode": wh.Code,
            "warehouseName": wh.Name,
            "locationId": loc.LocationID,
            "locationCode": loc.Code,
        })
    return {"items": items, "nextCursor": next_cursor, "generatedAt": iso(utcnow())}


def fefo_suggestions(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    location_id: Optional[str] = None,
    warehouse_id: Optional[str] = None,
    take: int = 10,
) -> List[Dict[str, Any]]:
    if not location_id and not warehouse_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="locationId or warehouseId is required")
    today = utc_today()
    not_expired = or_(Batch.ExpiresAt.is_(None), Batch.ExpiresAt >= today)
    fefo_order = (Batch.ExpiresAt.is_(None), Batch.ExpiresAt.asc(), Batch.BatchID.asc())

    if location_id:
        rows = (
            db.query(InventoryBalance, Batch, Location)
            .join(Batch, Batch.BatchID == InventoryBalance.BatchID)
            .join(Location, Location.LocationID == InventoryBalance.LocationID)
            .filter(
                InventoryBalance.TenantID == tenant_id,
                InventoryBalance.ProductID == product_id,
                InventoryBalance.LocationID == location_id,
                InventoryBalance.Quantity > 0,
                not_expired,
            )
            .order_by(*fefo_order)
            .limit(take)
            .all()
        )
        out = []
        for bal, batch, loc in rows:
            qty = bal.Quantity or ZERO
            out.append({
                "batchId": batch.BatchID,
                "batchNumber": batch.BatchNumber,
                "expiresAt": iso(batch.ExpiresAt),
                "status": batch.Status,
                "locationId": loc.LocationID,
                "locationCode": loc.Code,
                "quantity": num(qty),
                "availableQuantity": num(max(ZERO, qty - (bal.ReservedQuantity or ZERO))),
            })
        return out

    # warehouse-wide: one row per batch, summed over its locations
    qty_sum = func.sum(InventoryBalance.Quantity)
    reserved_sum = func.sum(InventoryBalance.ReservedQuantity)
    rows = (
        db.query(Batch, qty_sum, reserved_sum)
        .join(InventoryBalance, InventoryBalance.BatchID == Batch.BatchID)
        .join(Location, Location.LocationID == InventoryBalance.LocationID)
        .filter(
            InventoryBalance.TenantID == tenant_id,
            InventoryBalance.ProductID == product_id,
            Location.WarehouseID == warehouse_id,
            InventoryBalance.Quantity > 0,
            not_expired,
        )
        .group_by(Batch.BatchID)
        .order_by(*fefo_order)
        .limit(take)
        .all()
    )
    out = []
    for batch, qty, reserved in rows:
        qty = Decimal(qty or 0)
        reserved = Decimal(reserved or 0)
        out.append({
            "batchId": batch.BatchID,
            "batchNumber": batch.BatchNumber,
            "expiresAt": iso(batch.ExpiresAt),
            "status": batch.Status,
            "locationId": None,
            "locationCode": None,
            "quantity": num(qty),
            "availableQuantity": num(max(ZERO, qty - reserved)),
        })
    return out


# ---- Reservations ----
def reservable_balances(
    db: Session,
    *,
    tenant_id: str,
    product_id: str,
    batch_id: Optional[str] = None,
    warehouse_id: Optional[str] = None,
    location_id: Optional[str] = None,
) -> List[InventoryBalance]:
    """
    FEFO candidates: dated batches soonest first, then undated batches,
    then unbatched stock. Expired and quarantined batches are skipped.
    Rows are locked FOR UPDATE.
    """
    today = utc_today()
    q = (
        db.query(InventoryBalance)
        .outerjoin(Batch, Batch.BatchID == InventoryBalance.BatchID)
        .join(Location, Location.LocationID == InventoryBalance.LocationID)
        .join(Warehouse, Warehouse.WarehouseID == Location.WarehouseID)
        .filter(
            InventoryBalance.TenantID == tenant_id,
            InventoryBalance.ProductID == product_id,
            InventoryBalance.Quantity > InventoryBalance.ReservedQuantity,
            Location.IsActive.is_(True),
            Warehouse.IsActive.is_(True),
            or_(
                InventoryBalance.BatchID.is_(None),
                (Batch.Status == "RELEASED") & or_(Batch.ExpiresAt.is_(None), Batch.ExpiresAt >= today),
            ),
        )
    )
    if batch_id:
        q = q.filter(InventoryBalance.BatchID == batch_id)
    if warehouse_id:
        q = q.filter(Location.WarehouseID == warehouse_id)
    if location_id:
        q = q.filter(InventoryBalance.LocationID == location_id)
    return (
        q.order_by(
            InventoryBalance.BatchID.is_(None),
            Batch.ExpiresAt.is_(None),
            Batch.ExpiresAt.asc(),
            InventoryBalance.BalanceID.asc(),
        )
        .with_for_update(of=InventoryBalance)
        .all()
    )


def reserve_fefo(
    db: Session,
    *,
    tenant_id: str,
    order_id: str,
    line_id: str,
    product_id: str,
    quantity,
    batch_id: Optional[str] = None,
    warehouse_id: Optional[str] = None,
) -> Decimal:
    """Reserves up to `quantity`; returns the part that could not be covered."""
    remaining = to_qty(quantity)
    for bal in reservable_balances(
        db, tenant_id=tenant_id, product_id=product_id, batch_id=batch_id, warehouse_id=warehouse_id
    ):
        if remaining <= 0:
            break
        free = (bal.Quantity or ZERO) - (bal.ReservedQuantity or ZERO)
        if free <= 0:
            continue
        take = min(free, remaining)
        bal.ReservedQuantity = to_qty((bal.ReservedQuantity or ZERO) + take)
        bal.Version = int(bal.Version or 0) + 1
        db.add(SalesOrderReservation(
            TenantID=tenant_id,
            SalesOrderID=order_id,
            SalesOrderLineID=line_id,
            InventoryBalanceID=bal.BalanceID,
            Quantity=take,
        ))
        remaining = to_qty(remaining - take)
    db.flush()
    return remaining


def active_reservations(db: Session, order_id: str) -> List[SalesOrderReservation]:
    return (
        db.query(SalesOrderReservation)
        .filter(SalesOrderReservation.SalesOrderID == order_id, SalesOrderReservation.ReleasedAt.is_(None))
        .order_by(SalesOrderReservation.CreatedAt.asc(), SalesOrderReservation.ReservationID.asc())
        .all()
    )


def release_reservations(db: Session, reservations: Sequence[SalesOrderReservation]) -> int:
    now = utcnow()
    released = 0
    for r in reservations:
        if r.ReleasedAt is not None:
            continue
        bal = db.query(InventoryBalance).filter(InventoryBalance.BalanceID == r.InventoryBalanceID).with_for_update().one()
        bal.ReservedQuantity = max(ZERO, to_qty((bal.ReservedQuantity or ZERO) - r.Quantity))
        bal.Version = int(bal.Version or 0) + 1
        r.ReleasedAt = now
        released += 1
    db.flush()
    return released


def serialize_reservation(r: SalesOrderReservation) -> Dict[str, Any]:
    bal = r.balance
    return {
        "id": r.ReservationID,
        "lineId": r.SalesOrderLineID,
        "balanceId": r.InventoryBalanceID,
        "locationId": bal.LocationID if bal else None,
        "batchId": bal.BatchID if bal else None,
        "quantity": num(r.Quantity),
        "releasedAt": iso(r.ReleasedAt),
        "createdAt": iso(r.CreatedAt),
    }


