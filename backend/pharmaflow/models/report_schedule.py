from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, JSON, ForeignKey, CheckConstraint, Index, true
)
from ..core.db import Base, new_id
from ..core.clock import utcnow

SCHEDULE_TYPES = ("SALES", "STOCK")
FREQUENCIES = ("DAILY", "WEEKLY", "MONTHLY")


class ReportSchedule(Base):
    __tablename__ = "ReportSchedule"

    ScheduleID = Column(String(36), primary_key=True, default=new_id)
    TenantID   = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    Type       = Column(String(10), nullable=False)
    ReportKey  = Column(String(80), nullable=False)
    Params     = Column(JSON)
    Frequency  = Column(String(10), nullable=False)
    Hour       = Column(Integer, nullable=False, default=8)
    Minute     = Column(Integer, nullable=False, default=0)
    DayOfWeek  = Column(Integer)
    DayOfMonth = Column(Integer)
    Recipients = Column(JSON, nullable=False, default=list)
    Enabled    = Column(Boolean, nullable=False, default=True, server_default=true())
    LastRunAt  = Column(DateTime)
    NextRunAt  = Column(DateTime)
    CreatedAt  = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy  = Column(String(36))
    UpdatedAt  = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version    = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("Type IN ('SALES','STOCK')", name="CK_ReportSchedule_Type"),
        CheckConstraint("Frequency IN ('DAILY','WEEKLY','MONTHLY')", name="CK_ReportSchedule_Frequency"),
        Index("IX_ReportSchedule_Due", "Enabled", "NextRunAt"),
    )
