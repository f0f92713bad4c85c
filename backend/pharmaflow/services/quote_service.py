"""Sales quotes (COT-numbered) and their conversion into confirmed orders."""
import logging
from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import HTTPException, status
from sqlalchemy.orm import Session, selectinload

from ..core.api import num
from ..core.clock import iso, utc_today, utcnow
from ..domain.constants import SEQ_QUOTE, SEQ_SALES_ORDER
from ..models import Customer, Product, Quote, QuoteLine, SalesOrder, SalesOrderLine
from . import audit_service
from .common import branch_scope, contains_ci, get_scoped, keyset_page, lock_scoped, to_money, to_qty, transaction
from .sequence_service import next_sequence
from .stock_service import reserve_fefo

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def clamp_pct(value) -> Decimal:
    try:
        d = Decimal(str(value))
    except (ArithmeticError, ValueError, TypeError):
        return ZERO
    if not d.is_finite() or d < 0:
        return ZERO
    return min(d, HUNDRED)


def compute_totals(lines: Iterable[Tuple[Any, Any, Any]], global_discount_pct) -> Dict[str, Decimal]:
    """
    lines: (quantity, unit_price, discount_pct) tuples.
    Line discounts apply first, the global discount on the discounted subtotal.
    """
    subtotal = ZERO
    for qty, price, disc in lines:
        subtotal += Decimal(str(price)) * Decimal(str(qty)) * (1 - clamp_pct(disc) / HUNDRED)
    global_amount = subtotal * clamp_pct(global_discount_pct) / HUNDRED
    total = max(ZERO, subtotal - global_amount)
    return {
        "subtotal": to_money(subtotal),
        "globalDiscountAmount": to_money(global_amount),
        "total": to_money(total),
    }


def quote_totals(q: Quote) -> Dict[str, Decimal]:
    return compute_totals(((l.Quantity, l.UnitPrice, l.DiscountPct) for l in q.lines), q.GlobalDiscountPct)


def serialize_quote(q: Quote, with_lines: bool = True) -> Dict[str, Any]:
    totals = quote_totals(q)
    out = {
        "id": q.QuoteID,
        "number": q.Number,
        "status": q.Status,
        "customerId": q.CustomerID,
        "customerName": q.customer.Name if q.customer else None,
        "validityDays": q.ValidityDays,
        "paymentMode": q.PaymentMode,
        "deliveryDays": q.DeliveryDays,
        "globalDiscountPct": num(q.GlobalDiscountPct),
        "proposalValue": q.ProposalValue,
        "note": q.Note,
        "deliveryAddress": q.DeliveryAddress,
        "deliveryCity": q.DeliveryCity,
        "deliveryZone": q.DeliveryZone,
        "deliveryMapsUrl": q.DeliveryMapsUrl,
        "subtotal": num(totals["subtotal"]),
        "globalDiscountAmount": num(totals["globalDiscountAmount"]),
        "total": num(totals["total"]),
        "itemsCount": len(q.lines),
        "processedAt": iso(q.ProcessedAt),
        "version": q.Version,
        "createdAt": iso(q.CreatedAt),
        "updatedAt": iso(q.UpdatedAt),
    }
    if with_lines:
        out["lines"] = [
            {
                "id": l.QuoteLineID,
                "productId": l.ProductID,
                "productName": l.product.Name if l.product else None,
                "productSku": l.product.Sku if l.product else None,
                "quantity": num(l.Quantity),
                "unitPrice": num(l.UnitPrice),
                "discountPct": num(l.DiscountPct),
                "total": num(compute_totals([(l.Quantity, l.UnitPrice, l.DiscountPct)], 0)["total"]),
            }
            for l in q.lines
        ]
    return out


def _customer(db: Session, actor, customer_id: str) -> Customer:
    c = get_scoped(db, Customer, customer_id, actor.tenant_id, "Customer not found")
    scoped = branch_scope(actor)
    if scoped and (c.City or "").strip().upper() != scoped:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Solo puede cotizar a clientes de su sucursal")
    return c


def _price_map(db: Session, tenant_id: str, lines: Sequence) -> Dict[str, Product]:
    ids = {l.productId for l in lines}
    products = db.query(Product).filter(Product.TenantID == tenant_id, Product.ProductID.in_(ids)).all()
    if len(products) != len(ids):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="One or more products not found")
    return {p.ProductID: p for p in products}


def _build_lines(tenant_id: str, lines: Sequence, products: Dict[str, Product]) -> List[QuoteLine]:
    out = []
    for l in lines:
        price = l.unitPrice if l.unitPrice is not None else (products[l.productId].Price or ZERO)
        out.append(QuoteLine(
            TenantID=tenant_id,
            ProductID=l.productId,
            Quantity=to_qty(l.quantity),
            UnitPrice=to_money(price),
            DiscountPct=clamp_pct(l.discountPct or 0),
        ))
    return out


def _apply_header(q: Quote, payload, customer: Customer) -> None:
    q.CustomerID = customer.CustomerID
    q.ValidityDays = payload.validityDays
    q.PaymentMode = payload.paymentMode
    q.DeliveryDays = payload.deliveryDays
    q.GlobalDiscountPct = clamp_pct(payload.globalDiscountPct)
    q.ProposalValue = (payload.proposalValue or "").strip() or None
    q.Note = payload.note or None
    q.DeliveryAddress = payload.deliveryAddress or customer.Address
    city = payload.deliveryCity or customer.City
    q.DeliveryCity = city.strip().upper() if city else None
    q.DeliveryZone = payload.deliveryZone or customer.Zone
    q.DeliveryMapsUrl = payload.deliveryMapsUrl or customer.MapsUrl


def _load(db: Session, tenant_id: str, quote_id: str) -> Quote:
    q = (
        db.query(Quote)
        .options(selectinload(Quote.lines).selectinload(QuoteLine.product), selectinload(Quote.customer))
        .filter(Quote.QuoteID == quote_id, Quote.TenantID == tenant_id)
        .first()
    )
    if not q:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Quote not found")
    return q


def list_quotes(db: Session, *, tenant_id: str, customer_search: Optional[str], cursor: Optional[str], take: int):
    query = (
        db.query(Quote)
        .options(selectinload(Quote.lines), selectinload(Quote.customer))
        .filter(Quote.TenantID == tenant_id)
    )
    if customer_search and customer_search.strip():
        query = query.join(Customer, Customer.CustomerID == Quote.CustomerID).filter(
            contains_ci(Customer.Name, customer_search.strip())
        )
    return keyset_page(db, query, Quote, Quote.CreatedAt, Quote.QuoteID, cursor=cursor, take=take)


def get_quote(db: Session, *, tenant_id: str, quote_id: str) -> Quote:
    return _load(db, tenant_id, quote_id)


def create_quote(db: Session, *, actor, payload) -> Quote:
    customer = _customer(db, actor, payload.customerId)
    products = _price_map(db, actor.tenant_id, payload.lines)
    with transaction(db, "create_quote"):
        seq = next_sequence(db, actor.tenant_id, SEQ_QUOTE)
        q = Quote(TenantID=actor.tenant_id, Number=seq["number"], CreatedBy=actor.user_id)
        _apply_header(q, payload, customer)
        q.lines = _build_lines(actor.tenant_id, payload.lines, products)
        db.add(q)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.quote.create", entity_type="Quote", entity_id=q.QuoteID,
            after=serialize_quote(q),
        )
    return _load(db, actor.tenant_id, q.QuoteID)


def update_quote(db: Session, *, actor, quote_id: str, payload) -> Quote:
    customer = _customer(db, actor, payload.customerId)
    products = _price_map(db, actor.tenant_id, payload.lines)
    with transaction(db, "update_quote"):
        q = lock_scoped(db, Quote, Quote.QuoteID, quote_id, actor.tenant_id, "Quote not found")
        if q.Status == "PROCESSED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Quote already processed")
        before = serialize_quote(q)
        _apply_header(q, payload, customer)
        q.lines.clear()
        db.flush()
        q.lines.extend(_build_lines(actor.tenant_id, payload.lines, products))
        q.Version = int(q.Version or 0) + 1
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.quote.update", entity_type="Quote", entity_id=q.QuoteID,
            before=before, after=serialize_quote(q),
        )
    db.expire_all()
    return _load(db, actor.tenant_id, quote_id)


def delete_quote(db: Session, *, actor, quote_id: str) -> None:
    with transaction(db, "delete_quote"):
        q = lock_scoped(db, Quote, Quote.QuoteID, quote_id, actor.tenant_id, "Quote not found")
        if q.Status == "PROCESSED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Quote already processed")
        before = serialize_quote(q)
        db.delete(q)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.quote.delete", entity_type="Quote", entity_id=quote_id,
            before=before,
        )


def process_quote(db: Session, *, actor, quote_id: str) -> Tuple[SalesOrder, List[Dict[str, Any]]]:
    """CREATED quote -> CONFIRMED order with FEFO reservations; returns (order, shortages)."""
    scoped = branch_scope(actor)
    shortages: List[Dict[str, Any]] = []
    with transaction(db, "process_quote", conflict_detail="Quote already processed"):
        q = lock_scoped(db, Quote, Quote.QuoteID, quote_id, actor.tenant_id, "Quote not found")
        if q.Status != "CREATED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Quote already processed")

        seq = next_sequence(db, actor.tenant_id, SEQ_SALES_ORDER)
        order = SalesOrder(
            TenantID=actor.tenant_id,
            Number=seq["number"],
            CustomerID=q.CustomerID,
            QuoteID=q.QuoteID,
            Status="CONFIRMED",
            Note=q.Note,
            PaymentMode=q.PaymentMode,
            DeliveryDate=utc_today() + timedelta(days=int(q.DeliveryDays or 0)),
            DeliveryAddress=q.DeliveryAddress,
            DeliveryCity=q.DeliveryCity,
            DeliveryZone=q.DeliveryZone,
            DeliveryMapsUrl=q.DeliveryMapsUrl,
            CreatedBy=actor.user_id,
        )
        for l in q.lines:
            # line discounts are folded into the order's unit price
            net = compute_totals([(1, l.UnitPrice, l.DiscountPct)], q.GlobalDiscountPct)["total"]
            order.lines.append(SalesOrderLine(
                TenantID=actor.tenant_id, ProductID=l.ProductID, Quantity=l.Quantity, UnitPrice=net,
            ))
        db.add(order)
        db.flush()

        warehouse_id = actor.warehouse_id if scoped else None
        for line in order.lines:
            missing = reserve_fefo(
                db,
                tenant_id=actor.tenant_id,
                order_id=order.SalesOrderID,
                line_id=line.SalesOrderLineID,
                product_id=line.ProductID,
                quantity=line.Quantity,
                warehouse_id=warehouse_id,
            )
            if missing > 0:
                shortages.append({"lineId": line.SalesOrderLineID, "productId": line.ProductID, "missing": num(missing)})

        q.Status = "PROCESSED"
        q.ProcessedAt = utcnow()
        q.Version = int(q.Version or 0) + 1
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.quote.process", entity_type="Quote", entity_id=q.QuoteID,
            after={"salesOrderId": order.SalesOrderID, "number": order.Number, "shortages": shortages},
        )
    db.refresh(order)
    return order, shortages
