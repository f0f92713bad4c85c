from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, UniqueConstraint, CheckConstraint, true
)
from sqlalchemy.orm import relationship
from ..core.db import Base, new_id
from ..core.clock import utcnow

LOCATION_TYPES = ("BIN", "SHELF", "FLOOR")


class Warehouse(Base):
    __tablename__ = "Warehouse"

    WarehouseID = Column(String(36), primary_key=True, default=new_id)
    TenantID    = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Code        = Column(String(50), nullable=False)
    Name        = Column(String(200), nullable=False)
    City        = Column(String(120))
    IsActive    = Column(Boolean, nullable=False, default=True, server_default=true())
    CreatedAt   = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy   = Column(String(36))
    UpdatedAt   = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version     = Column(Integer, nullable=False, default=1)

    __table_args__ = (UniqueConstraint("TenantID", "Code", name="UQ_Warehouse_Tenant_Code"),)

    locations = relationship("Location", back_populates="warehouse", order_by="Location.Code")


class Location(Base):
    __tablename__ = "Location"

    LocationID  = Column(String(36), primary_key=True, default=new_id)
    TenantID    = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    WarehouseID = Column(String(36), ForeignKey("Warehouse.WarehouseID"), nullable=False)
    Code        = Column(String(50), nullable=False)
    Type        = Column(String(10), nullable=False, default="BIN")
    IsActive    = Column(Boolean, nullable=False, default=True, server_default=true())
    CreatedAt   = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy   = Column(String(36))
    Version     = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("TenantID", "WarehouseID", "Code", name="UQ_Location_Warehouse_Code"),
        CheckConstraint("Type IN ('BIN','SHELF','FLOOR')", name="CK_Location_Type"),
    )

    warehouse = relationship("Warehouse", back_populates="locations")
