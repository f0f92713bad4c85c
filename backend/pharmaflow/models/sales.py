from sqlalchemy import (
    Column, Integer, String, Date, DateTime, Numeric, ForeignKey, UniqueConstraint, CheckConstraint, Index
)
from sqlalchemy.orm import relationship
from ..core.db import Base, new_id
from ..core.clock import utcnow

QUOTE_STATUSES = ("CREATED", "PROCESSED")
ORDER_STATUSES = ("DRAFT", "CONFIRMED", "FULFILLED", "CANCELLED")


class Quote(Base):
    __tablename__ = "Quote"

    QuoteID           = Column(String(36), primary_key=True, default=new_id)
    TenantID          = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    Number            = Column(String(40), nullable=False)
    CustomerID        = Column(String(36), ForeignKey("Customer.CustomerID"), nullable=False)
    Status            = Column(String(10), nullable=False, default="CREATED")
    ValidityDays      = Column(Integer, nullable=False, default=7)
    PaymentMode       = Column(String(30), nullable=False, default="CASH")
    DeliveryDays      = Column(Integer, nullable=False, default=1)
    GlobalDiscountPct = Column(Numeric(5, 2), nullable=False, default=0)
    ProposalValue     = Column(String(200))
    Note              = Column(String(1000))
    DeliveryAddress   = Column(String(300))
    DeliveryCity      = Column(String(120))
    DeliveryZone      = Column(String(120))
    DeliveryMapsUrl   = Column(String(2000))
    ProcessedAt       = Column(DateTime)
    CreatedAt         = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy         = Column(String(36))
    UpdatedAt         = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version           = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("TenantID", "Number", name="UQ_Quote_Number"),
        CheckConstraint("Status IN ('CREATED','PROCESSED')", name="CK_Quote_Status"),
        Index("IX_Quote_Tenant_CreatedAt", "TenantID", "CreatedAt"),
    )

    customer = relationship("Customer")
    lines    = relationship("QuoteLine", back_populates="quote", cascade="all, delete-orphan",
                            order_by="QuoteLine.CreatedAt")


class QuoteLine(Base):
    __tablename__ = "QuoteLine"

    QuoteLineID = Column(String(36), primary_key=True, default=new_id)
    TenantID    = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    QuoteID     = Column(String(36), ForeignKey("Quote.QuoteID"), nullable=False)
    ProductID   = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    Quantity    = Column(Numeric(14, 3), nullable=False)
    UnitPrice   = Column(Numeric(14, 2), nullable=False)
    DiscountPct = Column(Numeric(5, 2), nullable=False, default=0)
    CreatedAt   = Column(DateTime, nullable=False, default=utcnow)

    quote   = relationship("Quote", back_populates="lines")
    product = relationship("Product")


class SalesOrder(Base):
    __tablename__ = "SalesOrder"

    SalesOrderID    = Column(String(36), primary_key=True, default=new_id)
    TenantID        = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    Number          = Column(String(40), nullable=False)
    CustomerID      = Column(String(36), ForeignKey("Customer.CustomerID"), nullable=False)
    QuoteID         = Column(String(36), ForeignKey("Quote.QuoteID"), unique=True)
    Status          = Column(String(10), nullable=False, default="DRAFT")
    Note            = Column(String(1000))
    PaymentMode     = Column(String(30), nullable=False, default="CASH")
    DeliveryDate    = Column(Date)
    DeliveredAt     = Column(DateTime)
    PaidAt          = Column(DateTime)
    PaidBy          = Column(String(36))
    DeliveryAddress = Column(String(300))
    DeliveryCity    = Column(String(120))
    DeliveryZone    = Column(String(120))
    DeliveryMapsUrl = Column(String(2000))
    CreatedAt       = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy       = Column(String(36))
    UpdatedAt       = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version         = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("TenantID", "Number", name="UQ_SalesOrder_Number"),
        CheckConstraint(
            "Status IN ('DRAFT','CONFIRMED','FULFILLED','CANCELLED')", name="CK_SalesOrder_Status"
        ),
        Index("IX_SalesOrder_Tenant_Status", "TenantID", "Status"),
    )

    customer     = relationship("Customer")
    lines        = relationship("SalesOrderLine", back_populates="order", cascade="all, delete-orphan",
                                order_by="SalesOrderLine.CreatedAt")
    reservations = relationship("SalesOrderReservation", back_populates="order")


class SalesOrderLine(Base):
    __tablename__ = "SalesOrderLine"

    SalesOrderLineID = Column(String(36), primary_key=True, default=new_id)
    TenantID         = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    SalesOrderID     = Column(String(36), ForeignKey("SalesOrder.SalesOrderID"), nullable=False)
    ProductID        = Column(String(36), ForeignKey("Product.ProductID"), nullable=False)
    BatchID          = Column(String(36), ForeignKey("Batch.BatchID"))
    Quantity         = Column(Numeric(14, 3), nullable=False)
    UnitPrice        = Column(Numeric(14, 2), nullable=False, default=0)
    CreatedAt        = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (CheckConstraint("Quantity > 0", name="CK_SalesOrderLine_Quantity"),)

    order   = relationship("SalesOrder", back_populates="lines")
    product = relationship("Product")
    batch   = relationship("Batch")


class SalesOrderReservation(Base):
    __tablename__ = "SalesOrderReservation"

    ReservationID      = Column(String(36), primary_key=True, default=new_id)
    TenantID           = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    SalesOrderID       = Column(String(36), ForeignKey("SalesOrder.SalesOrderID"), nullable=False, index=True)
    SalesOrderLineID   = Column(String(36), ForeignKey("SalesOrderLine.SalesOrderLineID"), nullable=False)
    InventoryBalanceID = Column(String(36), ForeignKey("InventoryBalance.BalanceID"), nullable=False, index=True)
    Quantity           = Column(Numeric(14, 3), nullable=False)
    ReleasedAt         = Column(DateTime)
    CreatedAt          = Column(DateTime, nullable=False, default=utcnow)

    order   = relationship("SalesOrder", back_populates="reservations")
    line    = relationship("SalesOrderLine")
    balance = relationship("InventoryBalance")
