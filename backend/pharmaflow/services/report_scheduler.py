import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import get_settings
from ..core.db import SessionLocal
from ..models import ReportSchedule
from .mailer import Mailer, get_mailer
from .report_schedule_service import build_report_url, compute_period, next_run_for, schedule_email

logger = logging.getLogger(__name__)

BATCH_SIZE = 50


def run_due_schedules(db: Session, mailer: Mailer, web_origin: str, now: Optional[datetime] = None) -> int:
    """Sends every due schedule once; returns how many were sent."""
    now = now or utcnow()
    due = (
        db.query(ReportSchedule)
        .filter(
            ReportSchedule.Enabled.is_(True),
            or_(ReportSchedule.NextRunAt.is_(None), ReportSchedule.NextRunAt <= now),
        )
        .order_by(ReportSchedule.NextRunAt.asc(), ReportSchedule.CreatedAt.asc())
        .limit(BATCH_SIZE)
        .all()
    )
    sent = 0
    for s in due:
        try:
            period = compute_period(s.Frequency, now)
            link = build_report_url(web_origin, s.Type, s.ReportKey, period[0], period[1], s.Params)
            subject, text = schedule_email(s, link, period)
            for to in s.Recipients or []:
                email = str(to or "").strip()
                if not email:
                    continue
                try:
                    mailer.send_email(email, subject, text)
                except Exception as e:
                    logger.warning("schedule %s: mail to %s failed: %s", s.ScheduleID, email, e)

            s.LastRunAt = now
            s.NextRunAt = next_run_for(s, now + timedelta(seconds=1))
            s.Version = int(s.Version or 0) + 1
            db.commit()
            sent += 1
        except Exception:
            db.rollback()
            logger.warning("schedule %s failed", s.ScheduleID, exc_info=True)
    return sent


class ReportScheduler:
    def __init__(
        self,
        interval_seconds: Optional[int] = None,
        session_factory: Callable[[], Session] = SessionLocal,
        mailer: Optional[Mailer] = None,
    ):
        settings = get_settings()
        self.interval = interval_seconds or settings.REPORT_SCHEDULER_INTERVAL_SECONDS
        self.web_origin = settings.WEB_ORIGIN
        self.session_factory = session_factory
        self.mailer = mailer or get_mailer()
        self._stop = threading.Event()
        self._tick_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def tick(self) -> int:
        if not self._tick_lock.acquire(blocking=False):
            return 0
        try:
            db = self.session_factory()
            try:
                return run_due_schedules(db, self.mailer, self.web_origin)
            finally:
                db.close()
        except Exception:
            logger.warning("report scheduler tick failed", exc_info=True)
            return 0
        finally:
            self._tick_lock.release()

    def _run(self) -> None:
        self.tick()
        while not self._stop.wait(self.interval):
            self.tick()

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="report-scheduler", daemon=True)
        self._thread.start()
        logger.info("report scheduler started (every %ss)", self.interval)

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("report scheduler stopped")
