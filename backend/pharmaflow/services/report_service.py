import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import desc, func, or_
from sqlalchemy.orm import Session, aliased

from ..core.api import num
from ..core.clock import iso
from ..models import (
    Batch, InventoryBalance, Location, Product, SalesOrder, SalesOrderLine, StockMovement,
)
from .mailer import MailerNotConfigured, decode_pdf_base64, get_mailer

logger = logging.getLogger(__name__)


def _period(q, col, date_from: Optional[datetime], date_to: Optional[datetime]):
    if date_from:
        q = q.filter(col >= date_from)
    if date_to:
        q = q.filter(col < date_to)
    return q


# ---- Sales ----
def sales_summary(
    db: Session, *, tenant_id: str, date_from: Optional[datetime], date_to: Optional[datetime], status_filter: Optional[str]
) -> List[Dict[str, Any]]:
    day = func.date(SalesOrder.CreatedAt)
    q = (
        db.query(
            day.label("day"),
            func.count(func.distinct(SalesOrder.SalesOrderID)).label("ordersCount"),
            func.count(SalesOrderLine.SalesOrderLineID).label("linesCount"),
            func.coalesce(func.sum(SalesOrderLine.Quantity), 0).label("quantity"),
            func.coalesce(func.sum(SalesOrderLine.Quantity * SalesOrderLine.UnitPrice), 0).label("amount"),
        )
        .join(SalesOrderLine, SalesOrderLine.SalesOrderID == SalesOrder.SalesOrderID)
        .filter(SalesOrder.TenantID == tenant_id)
    )
    if status_filter:
        q = q.filter(SalesOrder.Status == status_filter)
    q = _period(q, SalesOrder.CreatedAt, date_from, date_to)
    rows = q.group_by(day).order_by(day.asc()).all()
    return [
        {
            "day": str(r.day),
            "ordersCount": int(r.ordersCount),
            "linesCount": int(r.linesCount),
            "quantity": num(r.quantity),
            "amount": num(r.amount),
        }
        for r in rows
    ]


def top_products(
    db: Session,
    *,
    tenant_id: str,
    date_from: Optional[datetime],
    date_to: Optional[datetime],
    status_filter: Optional[str],
    take: int = 10,
) -> List[Dict[str, Any]]:
    amount = func.coalesce(func.sum(SalesOrderLine.Quantity * SalesOrderLine.UnitPrice), 0)
    q = (
        db.query(
            Product.ProductID.label("productId"),
            Product.Sku.label("sku"),
            Product.Name.label("name"),
            func.coalesce(func.sum(SalesOrderLine.Quantity), 0).label("quantity"),
            amount.label("amount"),
        )
        .join(SalesOrderLine, SalesOrderLine.ProductID == Product.ProductID)
        .join(SalesOrder, SalesOrder.SalesOrderID == SalesOrderLine.SalesOrderID)
        .filter(SalesOrder.TenantID == tenant_id)
    )
    if status_filter:
        q = q.filter(SalesOrder.Status == status_filter)
    q = _period(q, SalesOrder.CreatedAt, date_from, date_to)
    rows = q.group_by(Product.ProductID, Product.Sku, Product.Name).order_by(desc("amount")).limit(take).all()
    out = []
    for r in rows:
        item = dict(r._mapping)
        item["quantity"] = num(item["quantity"])
        item["amount"] = num(item["amount"])
        out.append(item)
    return out


# ---- Stock ----
def _loc_ref(loc: Optional[Location]) -> Optional[Dict[str, Any]]:
    if loc is None:
        return None
    wh = loc.warehouse
    return {
        "id": loc.LocationID,
        "code": loc.Code,
        "warehouse": {"id": wh.WarehouseID, "code": wh.Code, "name": wh.Name, "city": wh.City} if wh else None,
    }


def balances_expanded(
    db: Session,
    *,
    tenant_id: str,
    warehouse_id: Optional[str] = None,
    location_id: Optional[str] = None,
    product_id: Optional[str] = None,
    take: int = 100,
) -> List[Dict[str, Any]]:
    q = (
        db.query(InventoryBalance, Product, Batch, Location)
        .join(Product, Product.ProductID == InventoryBalance.ProductID)
        .outerjoin(Batch, Batch.BatchID == InventoryBalance.BatchID)
        .join(Location, Location.LocationID == InventoryBalance.LocationID)
        .filter(InventoryBalance.TenantID == tenant_id)
    )
    if warehouse_id:
        q = q.filter(Location.WarehouseID == warehouse_id)
    if location_id:
        q = q.filter(InventoryBalance.LocationID == location_id)
    if product_id:
        q = q.filter(InventoryBalance.ProductID == product_id)
    rows = q.order_by(InventoryBalance.UpdatedAt.desc(), InventoryBalance.BalanceID.desc()).limit(take).all()
    return [
        {
            "id": bal.BalanceID,
            "quantity": num(bal.Quantity),
            "reservedQuantity": num(bal.ReservedQuantity),
            "updatedAt": iso(bal.UpdatedAt),
            "productId": bal.ProductID,
            "batchId": bal.BatchID,
            "locationId": bal.LocationID,
            "product": {"sku": p.Sku, "name": p.Name, "genericName": p.GenericName},
            "batch": (
                {"batchNumber": b.BatchNumber, "expiresAt": iso(b.ExpiresAt), "status": b.Status, "version": b.Version}
                if b else None
            ),
            "location": _loc_ref(loc),
        }
        for bal, p, b, loc in rows
    ]


def movements_expanded(
    db: Session,
    *,
    tenant_id: str,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    product_id: Optional[str] = None,
    location_id: Optional[str] = None,
    take: int = 100,
) -> List[Dict[str, Any]]:
    from_loc = aliased(Location)
    to_loc = aliased(Location)
    q = (
        db.query(StockMovement, Product, Batch, from_loc, to_loc)
        .join(Product, Product.ProductID == StockMovement.ProductID)
        .outerjoin(Batch, Batch.BatchID == StockMovement.BatchID)
        .outerjoin(from_loc, from_loc.LocationID == StockMovement.FromLocationID)
        .outerjoin(to_loc, to_loc.LocationID == StockMovement.ToLocationID)
        .filter(StockMovement.TenantID == tenant_id)
    )
    if product_id:
        q = q.filter(StockMovement.ProductID == product_id)
    if location_id:
        q = q.filter(or_(StockMovement.FromLocationID == location_id, StockMovement.ToLocationID == location_id))
    q = _period(q, StockMovement.CreatedAt, date_from, date_to)
    rows = q.order_by(StockMovement.CreatedAt.desc(), StockMovement.MovementID.desc()).limit(take).all()
    return [
        {
            "id": m.MovementID,
            "number": m.Number,
            "createdAt": iso(m.CreatedAt),
            "type": m.Type,
            "productId": m.ProductID,
            "batchId": m.BatchID,
            "fromLocationId": m.FromLocationID,
            "toLocationId": m.ToLocationID,
            "quantity": num(m.Quantity),
            "referenceType": m.ReferenceType,
            "referenceId": m.ReferenceID,
            "note": m.Note,
            "product": {"sku": p.Sku, "name": p.Name},
            "batch": {"batchNumber": b.BatchNumber, "expiresAt": iso(b.ExpiresAt), "status": b.Status} if b else None,
            "fromLocation": _loc_ref(fl),
            "toLocation": _loc_ref(tl),
        }
        for m, p, b, fl, tl in rows
    ]


# ---- E-mail ----
def email_report(*, to: List[str], subject: str, filename: str, pdf_base64: str, message: Optional[str]) -> Dict[str, Any]:
    try:
        content = decode_pdf_base64(pdf_base64)
    except ValueError:
        content = b""
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid pdfBase64")
    mailer = get_mailer()
    try:
        mailer.send_report_email(to, subject, filename, pdf_base64, message)
    except MailerNotConfigured:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Email is not configured")
    except OSError as e:
        logger.warning("report email failed: %s", e)
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Email delivery failed")
    return {"sent": True, "recipients": len(to), "bytes": len(content)}
