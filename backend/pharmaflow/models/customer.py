from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, CheckConstraint, Index, true, false
)
from ..core.db import Base, new_id
from ..core.clock import utcnow


class Customer(Base):
    __tablename__ = "Customer"

    CustomerID        = Column(String(36), primary_key=True, default=new_id)
    TenantID          = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    Name              = Column(String(200), nullable=False)
    BusinessName      = Column(String(200))
    Nit               = Column(String(50))
    ContactName       = Column(String(200))
    ContactBirthDay   = Column(Integer)
    ContactBirthMonth = Column(Integer)
    Email             = Column(String(200))
    Phone             = Column(String(50))
    Address           = Column(String(300))
    City              = Column(String(120))
    Zone              = Column(String(120))
    MapsUrl           = Column(String(2000))
    CreditEnabled     = Column(Boolean, nullable=False, default=False, server_default=false())
    CreditDays        = Column(Integer)
    IsActive          = Column(Boolean, nullable=False, default=True, server_default=true())
    CreatedAt         = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy         = Column(String(36))
    UpdatedAt         = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version           = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("ContactBirthDay IS NULL OR (ContactBirthDay BETWEEN 1 AND 31)", name="CK_Customer_BirthDay"),
        CheckConstraint("ContactBirthMonth IS NULL OR (ContactBirthMonth BETWEEN 1 AND 12)", name="CK_Customer_BirthMonth"),
        Index("IX_Customer_Tenant_Name", "TenantID", "Name"),
        Index("IX_Customer_Tenant_City", "TenantID", "City"),
    )
