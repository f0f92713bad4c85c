from sqlalchemy import (
    Column, Integer, String, DateTime, Numeric, ForeignKey, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from ..core.db import Base, new_id
from ..core.clock import utcnow

MOVEMENT_TYPES = ("IN", "OUT", "TRANSFER", "ADJUSTMENT")
REQUEST_STATUSES = ("OPEN", "FULFILLED", "CANCELLED")
CONFIRMATION_STATUSES = ("PENDING", "ACCEPTED", "REJECTED")


class InventoryBalance(Base):
    __tablename__ = "InventoryBalance"

    BalanceID        = Column(String(36), primary_key=True, default=new_id)
    TenantID         = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    LocationID       = Column(String(36), ForeignKey("Location.LocationID"), nullable=False)
    ProductID        = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    BatchID          = Column(String(36), ForeignKey("Batch.BatchID"))
    Quantity         = Column(Numeric(14, 3), nullable=False, default=0)
    ReservedQuantity = Column(Numeric(14, 3), nullable=False, default=0)
    CreatedAt        = Column(DateTime, nullable=False, default=utcnow)
    UpdatedAt        = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version          = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("TenantID", "LocationID", "ProductID", "BatchID", name="UQ_Balance_Key"),
        CheckConstraint("Quantity >= 0", name="CK_Balance_Quantity"),
        CheckConstraint("ReservedQuantity >= 0", name="CK_Balance_Reserved"),
        Index("IX_Balance_Tenant_Product", "TenantID", "ProductID"),
    )

    location = relationship("Location")
    product  = relationship("Product")
    batch    = relationship("Batch")


class StockMovement(Base):
    __tablename__ = "StockMovement"

    MovementID     = Column(String(36), primary_key=True, default=new_id)
    TenantID       = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    Number         = Column(String(40), nullable=False)
    NumberYear     = Column(Integer, nullable=False)
    Type           = Column(String(12), nullable=False)
    ProductID      = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    BatchID        = Column(String(36), ForeignKey("Batch.BatchID"))
    FromLocationID = Column(String(36), ForeignKey("Location.LocationID"))
    ToLocationID   = Column(String(36), ForeignKey("Location.LocationID"))
    Quantity       = Column(Numeric(14, 3), nullable=False)
    ReferenceType  = Column(String(50))
    ReferenceID    = Column(String(80))
    Note           = Column(String(500))
    CreatedAt      = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy      = Column(String(36))

    __table_args__ = (
        UniqueConstraint("TenantID", "Number", name="UQ_StockMovement_Number"),
        CheckConstraint("Quantity > 0", name="CK_StockMovement_Quantity"),
        CheckConstraint("Type IN ('IN','OUT','TRANSFER','ADJUSTMENT')", name="CK_StockMovement_Type"),
        Index("IX_StockMovement_Tenant_CreatedAt", "TenantID", "CreatedAt"),
    )

    product       = relationship("Product")
    batch         = relationship("Batch")
    from_location = relationship("Location", foreign_keys=[FromLocationID])
    to_location   = relationship("Location", foreign_keys=[ToLocationID])


class StockMovementRequest(Base):
    __tablename__ = "StockMovementRequest"

    RequestID          = Column(String(36), primary_key=True, default=new_id)
    TenantID           = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Status             = Column(String(12), nullable=False, default="OPEN")
    ConfirmationStatus = Column(String(12), nullable=False, default="PENDING")
    RequestedCity      = Column(String(120), nullable=False)
    RequestedBy        = Column(String(200), nullable=False)
    QuoteID            = Column(String(36))
    Note               = Column(String(500))
    FulfilledAt        = Column(DateTime)
    FulfilledBy        = Column(String(36))
    ConfirmedAt        = Column(DateTime)
    ConfirmedBy        = Column(String(36))
    ConfirmationNote   = Column(String(500))
    CreatedAt          = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy          = Column(String(36))

    __table_args__ = (
        CheckConstraint("Status IN ('OPEN','FULFILLED','CANCELLED')", name="CK_MovementRequest_Status"),
    )

    items = relationship(
        "StockMovementRequestItem", back_populates="request",
        order_by="StockMovementRequestItem.CreatedAt", cascade="all, delete-orphan",
    )


class StockMovementRequestItem(Base):
    __tablename__ = "StockMovementRequestItem"

    RequestItemID     = Column(String(36), primary_key=True, default=new_id)
    TenantID          = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    RequestID         = Column(String(36), ForeignKey("StockMovementRequest.RequestID"), nullable=False)
    ProductID         = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    RequestedQuantity = Column(Numeric(14, 3), nullable=False)
    RemainingQuantity = Column(Numeric(14, 3), nullable=False)
    CreatedAt         = Column(DateTime, nullable=False, default=utcnow)

    request = relationship("StockMovementRequest", back_populates="items")
    product = relationship("Product")


class StockReturn(Base):
    __tablename__ = "StockReturn"

    ReturnID     = Column(String(36), primary_key=True, default=new_id)
    TenantID     = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    ToLocationID = Column(String(36), ForeignKey("Location.LocationID"), nullable=False)
    SourceType   = Column(String(30))
    SourceID     = Column(String(80))
    Reason       = Column(String(500), nullable=False)
    Note         = Column(String(500))
    CreatedAt    = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy    = Column(String(36))

    items       = relationship("StockReturnItem", back_populates="stock_return", cascade="all, delete-orphan")
    to_location = relationship("Location")


class StockReturnItem(Base):
    __tablename__ = "StockReturnItem"

    ReturnItemID = Column(String(36), primary_key=True, default=new_id)
    TenantID     = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    ReturnID     = Column(String(36), ForeignKey("StockReturn.ReturnID"), nullable=False)
    ProductID    = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    BatchID      = Column(String(36), ForeignKey("Batch.BatchID"))
    Quantity     = Column(Numeric(14, 3), nullable=False)
    CreatedAt    = Column(DateTime, nullable=False, default=utcnow)

    stock_return = relationship("StockReturn", back_populates="items")
    product      = relationship("Product")
