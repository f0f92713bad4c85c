"""Executive summary counters for the current calendar month."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import case, desc, func
from sqlalchemy.orm import Session

from ..core.clock import add_months, utcnow
from ..domain.constants import NO_CITY_LABEL
from ..models import Customer, InventoryBalance, Location, Product, Quote, SalesOrder, Warehouse

logger = logging.getLogger(__name__)

PENDING_STATUSES = ("DRAFT", "CONFIRMED")


def month_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """[first day of this month, first day of next month)"""
    now = now or utcnow()
    start = datetime(now.year, now.month, 1)
    return start, add_months(start, 1)


def _city(col):
    return func.coalesce(func.upper(col), NO_CITY_LABEL)


def _counts(rows) -> List[Dict[str, Any]]:
    return [{"city": r.city, "count": int(r.count)} for r in rows]


def executive_summary(db: Session, *, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    start, end = month_bounds(now)

    # products
    total_products = (
        db.query(func.count(Product.ProductID))
        .filter(Product.TenantID == tenant_id, Product.IsActive.is_(True))
        .scalar()
    )
    with_stock = (
        db.query(func.count(func.distinct(InventoryBalance.ProductID)))
        .join(Product, Product.ProductID == InventoryBalance.ProductID)
        .filter(Product.TenantID == tenant_id, Product.IsActive.is_(True), InventoryBalance.Quantity > 0)
        .scalar()
    )
    wh_city = _city(Warehouse.City).label("city")
    product_count = func.count(func.distinct(Product.ProductID))
    products_by_city = (
        db.query(wh_city, product_count.label("count"))
        .select_from(Product)
        .join(InventoryBalance, InventoryBalance.ProductID == Product.ProductID)
        .join(Location, Location.LocationID == InventoryBalance.LocationID)
        .join(Warehouse, Warehouse.WarehouseID == Location.WarehouseID)
        .filter(Product.TenantID == tenant_id, Product.IsActive.is_(True), InventoryBalance.Quantity > 0)
        .group_by(wh_city)
        .order_by(desc(product_count))
        .all()
    )

    # customers
    customer_city = _city(Customer.City).label("city")
    active_customers = db.query(Customer).filter(Customer.TenantID == tenant_id, Customer.IsActive.is_(True))
    total_customers = active_customers.count()
    customer_count = func.count(Customer.CustomerID)
    customers_by_city = (
        db.query(customer_city, customer_count.label("count"))
        .filter(Customer.TenantID == tenant_id, Customer.IsActive.is_(True))
        .group_by(customer_city)
        .order_by(desc(customer_count))
        .all()
    )

    # quotes still waiting to be processed
    quote_filter = (
        Quote.TenantID == tenant_id,
        Quote.Status == "CREATED",
        Quote.CreatedAt >= start,
        Quote.CreatedAt < end,
    )
    quotes_this_month = db.query(func.count(Quote.QuoteID)).filter(*quote_filter).scalar()
    quote_count = func.count(Quote.QuoteID)
    quotes_by_city = (
        db.query(customer_city, quote_count.label("count"))
        .join(Customer, Customer.CustomerID == Quote.CustomerID)
        .filter(*quote_filter)
        .group_by(customer_city)
        .order_by(desc(quote_count))
        .all()
    )

    # orders
    order_filter = (SalesOrder.TenantID == tenant_id, SalesOrder.CreatedAt >= start, SalesOrder.CreatedAt < end)
    pending_expr = func.sum(case((SalesOrder.Status.in_(PENDING_STATUSES), 1), else_=0))
    fulfilled_expr = func.sum(case((SalesOrder.Status == "FULFILLED", 1), else_=0))
    paid_expr = func.sum(case((SalesOrder.PaidAt.isnot(None), 1), else_=0))
    totals = (
        db.query(
            func.count(SalesOrder.SalesOrderID).label("total"),
            pending_expr.label("pending"),
            fulfilled_expr.label("fulfilled"),
            paid_expr.label("paid"),
        )
        .filter(*order_filter)
        .one()
    )
    orders_by_city = (
        db.query(
            customer_city,
            pending_expr.label("pending"),
            fulfilled_expr.label("fulfilled"),
            paid_expr.label("paid"),
        )
        .join(Customer, Customer.CustomerID == SalesOrder.CustomerID)
        .filter(*order_filter)
        .group_by(customer_city)
        .order_by(desc(func.count(SalesOrder.SalesOrderID)))
        .all()
    )

    return {
        "products": {
            "withStock": int(with_stock or 0),
            "total": int(total_products or 0),
            "byCity": _counts(products_by_city),
        },
        "customers": {"total": int(total_customers), "byCity": _counts(customers_by_city)},
        "quotes": {"thisMonth": int(quotes_this_month or 0), "byCity": _counts(quotes_by_city)},
        "orders": {
            "thisMonth": int(totals.total or 0),
            "pending": int(totals.pending or 0),
            "fulfilled": int(totals.fulfilled or 0),
            "paid": int(totals.paid or 0),
            "byCity": [
                {
                    "city": r.city,
                    "pending": int(r.pending or 0),
                    "fulfilled": int(r.fulfilled or 0),
                    "paid": int(r.paid or 0),
                }
                for r in orders_by_city
            ],
        },
    }
