"""Scheduled report e-mails: run-time arithmetic and CRUD.

All times are naive UTC. The scheduler thread (see report_scheduler) only calls
the pure helpers below; the CRUD functions back the /reports/schedules routes.
"""
import logging
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ..core.clock import iso, last_day_of_month, utcnow
from ..domain.constants import REPORT_SALES_READ, REPORT_STOCK_READ
from ..models import ReportSchedule
from . import audit_service
from .common import bump_version, check_version, lock_scoped, transaction

logger = logging.getLogger(__name__)

TYPE_PERMISSION = {"SALES": REPORT_SALES_READ, "STOCK": REPORT_STOCK_READ}
TYPE_LABEL = {"SALES": "Ventas", "STOCK": "Stock"}

SCHEDULE_FIELDS = {
    "reportKey": "ReportKey",
    "params": "Params",
    "frequency": "Frequency",
    "hour": "Hour",
    "minute": "Minute",
    "dayOfWeek": "DayOfWeek",
    "dayOfMonth": "DayOfMonth",
    "recipients": "Recipients",
    "enabled": "Enabled",
}


def _clamp(value: int, lo: int, hi: int) -> int:
    return min(max(int(value), lo), hi)


def _clamp_day(year: int, month: int, day: int) -> int:
    return _clamp(day, 1, last_day_of_month(year, month))


# ---- Pure helpers ----
def compute_next_run_at(
    now: datetime,
    frequency: str,
    hour: int,
    minute: int,
    day_of_week: Optional[int] = None,
    day_of_month: Optional[int] = None,
) -> datetime:
    """First run strictly after ``now``.

    ``day_of_week`` uses 0 = Sunday .. 6 = Saturday.
    """
    hour = _clamp(hour, 0, 23)
    minute = _clamp(minute, 0, 59)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if frequency == "DAILY":
        if candidate <= now:
            candidate += timedelta(days=1)
        return candidate

    if frequency == "WEEKLY":
        target = 1 if day_of_week is None else int(day_of_week)
        current = (candidate.weekday() + 1) % 7  # Python: Monday = 0
        delta = (target - current) % 7
        if delta == 0 and candidate <= now:
            delta = 7
        return candidate + timedelta(days=delta)

    target_dom = 1 if day_of_month is None else int(day_of_month)
    candidate = candidate.replace(day=_clamp_day(now.year, now.month, target_dom))
    if candidate <= now:
        year, month = (now.year + 1, 1) if now.month == 12 else (now.year, now.month + 1)
        candidate = datetime(year, month, _clamp_day(year, month, target_dom), hour, minute)
    return candidate


def compute_period(frequency: str, now: datetime) -> Tuple[date, date]:
    """[from, to) covered by a run at ``now``."""
    today = now.date()
    if frequency == "DAILY":
        return today - timedelta(days=1), today
    if frequency == "WEEKLY":
        return today - timedelta(days=7), today
    start_this = today.replace(day=1)
    start_prev = (start_this - timedelta(days=1)).replace(day=1)
    return start_prev, start_this


def build_report_url(
    web_origin: str,
    type_: str,
    report_key: str,
    date_from: date,
    date_to: date,
    params: Optional[Dict[str, Any]] = None,
) -> str:
    path = "/reports/sales" if type_ == "SALES" else "/reports/stock"
    query = {"tab": report_key, "from": date_from.isoformat(), "to": date_to.isoformat()}
    status_param = (params or {}).get("status")
    if isinstance(status_param, str) and status_param.strip():
        query["status"] = status_param
    return f"{web_origin.rstrip('/')}{path}?{urlencode(query)}"


def schedule_email(schedule: ReportSchedule, link: str, period: Tuple[date, date]) -> Tuple[str, str]:
    subject = f"Reporte programado: {TYPE_LABEL.get(schedule.Type, schedule.Type)} ({schedule.Frequency})"
    text = (
        "Hola,\n\n"
        f"Aquí tienes tu reporte programado ({schedule.ReportKey}).\n"
        f"Periodo: {period[0].isoformat()} a {period[1].isoformat()}\n\n"
        f"Abrir reporte: {link}\n\n"
        "Tip: desde la vista puedes exportar a PDF y enviarlo.\n"
    )
    return subject, text


def next_run_for(s: ReportSchedule, now: datetime) -> datetime:
    return compute_next_run_at(now, s.Frequency, s.Hour, s.Minute, s.DayOfWeek, s.DayOfMonth)


# ---- CRUD ----
def serialize_schedule(s: ReportSchedule) -> Dict[str, Any]:
    return {
        "id": s.ScheduleID,
        "type": s.Type,
        "reportKey": s.ReportKey,
        "params": s.Params,
        "frequency": s.Frequency,
        "hour": s.Hour,
        "minute": s.Minute,
        "dayOfWeek": s.DayOfWeek,
        "dayOfMonth": s.DayOfMonth,
        "recipients": list(s.Recipients or []),
        "enabled": bool(s.Enabled),
        "lastRunAt": iso(s.LastRunAt),
        "nextRunAt": iso(s.NextRunAt),
        "version": s.Version,
        "createdAt": iso(s.CreatedAt),
        "updatedAt": iso(s.UpdatedAt),
    }


def allowed_types(actor) -> List[str]:
    return [t for t, perm in TYPE_PERMISSION.items() if actor.has(perm)]


def _require_type(actor, type_: str) -> None:
    if not actor.has(TYPE_PERMISSION.get(type_, "")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")


def list_schedules(db: Session, *, actor, type_filter: Optional[str] = None) -> List[ReportSchedule]:
    types = allowed_types(actor)
    if type_filter:
        types = [t for t in types if t == type_filter]
    if not types:
        return []
    return (
        db.query(ReportSchedule)
        .filter(ReportSchedule.TenantID == actor.tenant_id, ReportSchedule.Type.in_(types))
        .order_by(ReportSchedule.CreatedAt.desc(), ReportSchedule.ScheduleID.desc())
        .all()
    )


def create_schedule(db: Session, *, actor, payload) -> ReportSchedule:
    _require_type(actor, payload.type)
    with transaction(db, "create_report_schedule"):
        s = ReportSchedule(
            TenantID=actor.tenant_id,
            Type=payload.type,
            ReportKey=payload.reportKey,
            Params=payload.params,
            Frequency=payload.frequency,
            Hour=payload.hour,
            Minute=payload.minute,
            DayOfWeek=payload.dayOfWeek,
            DayOfMonth=payload.dayOfMonth,
            Recipients=[str(r) for r in payload.recipients],
            Enabled=payload.enabled,
            CreatedBy=actor.user_id,
        )
        s.NextRunAt = next_run_for(s, utcnow())
        db.add(s)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="report.schedule.create", entity_type="ReportSchedule", entity_id=s.ScheduleID,
            after=serialize_schedule(s),
        )
    db.refresh(s)
    return s


def update_schedule(db: Session, *, actor, schedule_id: str, version: int, changes: Dict[str, Any]) -> ReportSchedule:
    with transaction(db, "update_report_schedule"):
        s = lock_scoped(db, ReportSchedule, ReportSchedule.ScheduleID, schedule_id, actor.tenant_id, "Not found")
        _require_type(actor, s.Type)
        check_version(s, version)
        before = serialize_schedule(s)
        for key, value in changes.items():
            if key == "recipients" and value is not None:
                value = [str(r) for r in value]
            if key in SCHEDULE_FIELDS:
                setattr(s, SCHEDULE_FIELDS[key], value)
        s.NextRunAt = next_run_for(s, utcnow())
        bump_version(s)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="report.schedule.update", entity_type="ReportSchedule", entity_id=s.ScheduleID,
            before=before, after=serialize_schedule(s),
        )
    db.refresh(s)
    return s


def delete_schedule(db: Session, *, actor, schedule_id: str) -> None:
    with transaction(db, "delete_report_schedule"):
        s = lock_scoped(db, ReportSchedule, ReportSchedule.ScheduleID, schedule_id, actor.tenant_id, "Not found")
        _require_type(actor, s.Type)
        before = serialize_schedule(s)
        db.delete(s)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="report.schedule.delete", entity_type="ReportSchedule", entity_id=schedule_id,
            before=before,
        )
