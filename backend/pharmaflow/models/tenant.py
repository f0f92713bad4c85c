from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, ForeignKey, UniqueConstraint, CheckConstraint, true, false
)
from sqlalchemy.orm import relationship
from ..core.db import Base, new_id
from ..core.clock import utcnow

MODULE_CODES = ("WAREHOUSE", "SALES", "LABORATORY")
THEME_MODES = ("LIGHT", "DARK")


class Tenant(Base):
    __tablename__ = "Tenant"

    TenantID              = Column(String(36), primary_key=True, default=new_id)
    Name                  = Column(String(200), nullable=False)
    IsActive              = Column(Boolean, nullable=False, default=True, server_default=true())
    BranchLimit           = Column(Integer, nullable=False, default=1)
    ContactName           = Column(String(200))
    ContactEmail          = Column(String(200))
    ContactPhone          = Column(String(20))
    SubscriptionExpiresAt = Column(DateTime)
    Country               = Column(String(2), nullable=False, default="BO")
    # Branding
    LogoUrl               = Column(String(2000))
    BrandPrimary          = Column(String(7))
    BrandSecondary        = Column(String(7))
    BrandTertiary         = Column(String(7))
    DefaultTheme          = Column(String(5), nullable=False, default="LIGHT")
    CreatedAt             = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy             = Column(String(36))
    UpdatedAt             = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version               = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        CheckConstraint("BranchLimit >= 1", name="CK_Tenant_BranchLimit"),
        CheckConstraint("DefaultTheme IN ('LIGHT','DARK')", name="CK_Tenant_Theme"),
    )

    domains = relationship("TenantDomain", back_populates="tenant", order_by="TenantDomain.CreatedAt")
    modules = relationship("TenantModule", back_populates="tenant")


class TenantModule(Base):
    __tablename__ = "TenantModule"

    TenantModuleID = Column(String(36), primary_key=True, default=new_id)
    TenantID       = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Code           = Column(String(20), nullable=False)
    Enabled        = Column(Boolean, nullable=False, default=True, server_default=true())
    CreatedAt      = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("TenantID", "Code", name="UQ_TenantModule_Code"),)

    tenant = relationship("Tenant", back_populates="modules")


class TenantDomain(Base):
    __tablename__ = "TenantDomain"

    TenantDomainID             = Column(String(36), primary_key=True, default=new_id)
    TenantID                   = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Domain                     = Column(String(255), nullable=False, unique=True)
    IsPrimary                  = Column(Boolean, nullable=False, default=False, server_default=false())
    VerifiedAt                 = Column(DateTime)
    VerificationToken          = Column(String(100))
    VerificationTokenExpiresAt = Column(DateTime)
    CreatedAt                  = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy                  = Column(String(36))
    UpdatedAt                  = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    Version                    = Column(Integer, nullable=False, default=1)

    tenant = relationship("Tenant", back_populates="domains")


class TenantSequence(Base):
    __tablename__ = "TenantSequence"

    TenantSequenceID = Column(String(36), primary_key=True, default=new_id)
    TenantID         = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    Year             = Column(Integer, nullable=False)
    Key              = Column(String(10), nullable=False)
    CurrentValue     = Column(Integer, nullable=False, default=0)
    UpdatedAt        = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("TenantID", "Year", "Key", name="UQ_TenantSequence_Key"),)


class ContactInfo(Base):
    __tablename__ = "ContactInfo"

    ContactInfoID = Column(String(36), primary_key=True, default=new_id)
    ModalHeader   = Column(String(200), nullable=False)
    ModalBody     = Column(Text, nullable=False)
    UpdatedBy     = Column(String(36))
    UpdatedAt     = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
