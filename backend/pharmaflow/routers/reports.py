# backend/pharmaflow/routers/reports.py
from datetime import datetime
from typing import Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.clock import as_naive_utc
from ..core.db import get_db
from ..core.security import AuthContext, AuthDep, require_any_permission, require_permission
from ..domain.constants import REPORT_SALES_READ, REPORT_STOCK_READ
from ..schemas.reports import ReportEmail, ScheduleCreate, ScheduleUpdate
from ..services import report_schedule_service, report_service

router = APIRouter(prefix="/api/v1/reports", tags=["reports"])

SalesReader = require_permission(REPORT_SALES_READ)
StockReader = require_permission(REPORT_STOCK_READ)
AnyReader = require_any_permission(REPORT_SALES_READ, REPORT_STOCK_READ)


# ---------- Shared: period validation ----------
def validate_period(
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
) -> Tuple[Optional[datetime], Optional[datetime]]:
    start = as_naive_utc(date_from) if date_from else None
    end = as_naive_utc(date_to) if date_to else None
    if start and end and end <= start:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="'to' must be after 'from'")
    return start, end


# =========================
# Sales
# =========================
@router.get("/sales/summary")
def sales_summary(
    period: Tuple[Optional[datetime], Optional[datetime]] = Depends(validate_period),
    status_filter: Optional[str] = Query(None, alias="status", max_length=20),
    ctx: AuthContext = Depends(SalesReader),
    db: Session = Depends(get_db),
):
    items = report_service.sales_summary(
        db, tenant_id=ctx.tenant_id, date_from=period[0], date_to=period[1], status_filter=status_filter
    )
    return ok(items, meta=list_meta(items))


@router.get("/sales/top-products")
def top_products(
    period: Tuple[Optional[datetime], Optional[datetime]] = Depends(validate_period),
    status_filter: Optional[str] = Query(None, alias="status", max_length=20),
    take: int = Query(10, ge=1, le=50),
    ctx: AuthContext = Depends(SalesReader),
    db: Session = Depends(get_db),
):
    items = report_service.top_products(
        db, tenant_id=ctx.tenant_id, date_from=period[0], date_to=period[1], status_filter=status_filter, take=take
    )
    return ok(items, meta=list_meta(items))


# =========================
# Stock
# =========================
@router.get("/stock/balances-expanded")
def balances_expanded(
    warehouseId: Optional[str] = None,
    locationId: Optional[str] = None,
    productId: Optional[str] = None,
    take: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(StockReader),
    db: Session = Depends(get_db),
):
    items = report_service.balances_expanded(
        db, tenant_id=ctx.tenant_id, warehouse_id=warehouseId, location_id=locationId, product_id=productId, take=take
    )
    return ok(items, meta=list_meta(items))


@router.get("/stock/movements-expanded")
def movements_expanded(
    period: Tuple[Optional[datetime], Optional[datetime]] = Depends(validate_period),
    productId: Optional[str] = None,
    locationId: Optional[str] = None,
    take: int = Query(100, ge=1, le=500),
    ctx: AuthContext = Depends(StockReader),
    db: Session = Depends(get_db),
):
    items = report_service.movements_expanded(
        db, tenant_id=ctx.tenant_id, date_from=period[0], date_to=period[1],
        product_id=productId, location_id=locationId, take=take,
    )
    return ok(items, meta=list_meta(items))


# =========================
# E-mail delivery
# =========================
@router.post("/email")
def email_report(payload: ReportEmail, ctx: AuthContext = Depends(AnyReader)):
    result = report_service.email_report(
        to=[str(t) for t in payload.to],
        subject=payload.subject,
        filename=payload.filename,
        pdf_base64=payload.pdfBase64,
        message=payload.message,
    )
    return ok(result)


# =========================
# Schedules
# =========================
@router.get("/schedules")
def list_schedules(
    ctx: AuthDep,
    type_filter: Optional[str] = Query(None, alias="type", pattern="^(SALES|STOCK)$"),
    db: Session = Depends(get_db),
):
    rows = report_schedule_service.list_schedules(db, actor=ctx, type_filter=type_filter)
    items = [report_schedule_service.serialize_schedule(s) for s in rows]
    return ok(items, meta=list_meta(items))


@router.post("/schedules", status_code=status.HTTP_201_CREATED)
def create_schedule(payload: ScheduleCreate, ctx: AuthDep, db: Session = Depends(get_db)):
    s = report_schedule_service.create_schedule(db, actor=ctx, payload=payload)
    return ok(report_schedule_service.serialize_schedule(s), status_code=status.HTTP_201_CREATED)


@router.patch("/schedules/{schedule_id}")
def update_schedule(
    payload: ScheduleUpdate,
    ctx: AuthDep,
    schedule_id: str = Path(...),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"version"})
    s = report_schedule_service.update_schedule(
        db, actor=ctx, schedule_id=schedule_id, version=payload.version, changes=changes
    )
    return ok(report_schedule_service.serialize_schedule(s))


@router.delete("/schedules/{schedule_id}")
def delete_schedule(ctx: AuthDep, schedule_id: str = Path(...), db: Session = Depends(get_db)):
    report_schedule_service.delete_schedule(db, actor=ctx, schedule_id=schedule_id)
    return ok({"id": schedule_id, "deleted": True})
