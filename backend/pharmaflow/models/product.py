from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Text, Numeric, ForeignKey,
    UniqueConstraint, CheckConstraint, true
)
from sqlalchemy.orm import relationship
from ..core.db import Base, new_id
from ..core.clock import utcnow

BATCH_STATUSES = ("RELEASED", "QUARANTINE")


class Product(Base):
    __tablename__ = "Product"

    ProductID   = Column(String(36), primary_key=True, default=new_id)
    TenantID    = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Sku         = Column(String(80), nullable=False)
    Name        = Column(String(200), nullable=False)
    GenericName = Column(String(200))
    Description = Column(Text)
    Cost        = Column(Numeric(14, 2))
    Price       = Column(Numeric(14, 2))
    IsActive    = Column(Boolean, nullable=False, default=True, server_default=true())
    CreatedAt   = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy   = Column(String(36))
    UpdatedAt   = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version     = Column(Integer, nullable=False, default=1)

    __table_args__ = (UniqueConstraint("TenantID", "Sku", name="UQ_Product_Tenant_Sku"),)

    batches = relationship("Batch", back_populates="product")


class Batch(Base):
    __tablename__ = "Batch"

    BatchID           = Column(String(36), primary_key=True, default=new_id)
    TenantID          = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    ProductID         = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    BatchNumber       = Column(String(80), nullable=False)
    ManufacturingDate = Column(Date)
    ExpiresAt         = Column(Date)
    Status            = Column(String(12), nullable=False, default="RELEASED")
    CreatedAt         = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy         = Column(String(36))
    UpdatedAt         = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version           = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("TenantID", "ProductID", "BatchNumber", name="UQ_Batch_Product_Number"),
        CheckConstraint("Status IN ('RELEASED','QUARANTINE')", name="CK_Batch_Status"),
    )

    product = relationship("Product", back_populates="batches")
