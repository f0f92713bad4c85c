"""Accounts receivable: delivered orders and their due dates."""
import logging
import re
from datetime import datetime, time, timedelta
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from ..core.api import num
from ..core.clock import iso, utcnow
from ..models import Customer, SalesOrder
from . import audit_service
from .common import branch_scope, bump_version, check_version, transaction
from .sales_order_service import order_total

logger = logging.getLogger(__name__)

_CREDIT_RE = re.compile(r"^CREDIT_(\d{1,3})$")


def credit_days_from_mode(payment_mode: Optional[str]) -> int:
    mode = (payment_mode or "").strip().upper()
    m = _CREDIT_RE.match(mode)
    return int(m.group(1)) if m else 0


def due_at(order: SalesOrder) -> datetime:
    base = order.DeliveredAt
    if base is None and order.DeliveryDate is not None:
        base = datetime.combine(order.DeliveryDate, time.min)
    return (base or utcnow()) + timedelta(days=credit_days_from_mode(order.PaymentMode))


def serialize_receivable(o: SalesOrder) -> Dict[str, Any]:
    return {
        "id": o.SalesOrderID,
        "number": o.Number,
        "version": o.Version,
        "customerId": o.CustomerID,
        "customerName": o.customer.Name if o.customer else None,
        "paymentMode": o.PaymentMode,
        "creditDays": credit_days_from_mode(o.PaymentMode),
        "deliveryDate": iso(o.DeliveryDate),
        "deliveredAt": iso(o.DeliveredAt),
        "dueAt": iso(due_at(o)),
        "total": num(order_total(o)),
        "paidAt": iso(o.PaidAt),
    }


def list_payments(db: Session, *, actor, status_filter: str = "DUE", take: int = 100) -> List[SalesOrder]:
    q = (
        db.query(SalesOrder)
        .join(Customer, Customer.CustomerID == SalesOrder.CustomerID)
        .options(selectinload(SalesOrder.lines), selectinload(SalesOrder.customer))
        .filter(SalesOrder.TenantID == actor.tenant_id, SalesOrder.Status == "FULFILLED")
    )
    if status_filter == "DUE":
        q = q.filter(SalesOrder.PaidAt.is_(None))
    elif status_filter == "PAID":
        q = q.filter(SalesOrder.PaidAt.isnot(None))
    scoped = branch_scope(actor)
    if scoped:
        q = q.filter(func.upper(Customer.City) == scoped)
    return (
        q.order_by(SalesOrder.DeliveryDate.is_(None), SalesOrder.DeliveryDate.asc(), SalesOrder.SalesOrderID.asc())
        .limit(take)
        .all()
    )


def mark_paid(db: Session, *, actor, order_id: str, version: int) -> SalesOrder:
    scoped = branch_scope(actor)
    with transaction(db, "mark_order_paid"):
        q = (
            db.query(SalesOrder)
            .join(Customer, Customer.CustomerID == SalesOrder.CustomerID)
            .filter(SalesOrder.SalesOrderID == order_id, SalesOrder.TenantID == actor.tenant_id)
        )
        if scoped:
            q = q.filter(func.upper(Customer.City) == scoped)
        o = q.with_for_update(of=SalesOrder).first()
        if not o:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
        check_version(o, version)
        if o.Status != "FULFILLED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only delivered orders can be paid")
        if o.PaidAt is not None:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Order already paid")
        o.PaidAt = utcnow()
        o.PaidBy = actor.user_id
        bump_version(o)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.order.pay", entity_type="SalesOrder", entity_id=o.SalesOrderID,
            before={"paidAt": None}, after={"paidAt": iso(o.PaidAt), "paidBy": actor.user_id},
        )
    db.refresh(o)
    return o
