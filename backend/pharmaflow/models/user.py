from sqlalchemy import (
    Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint, true, false
)
from sqlalchemy.orm import relationship
from ..core.db import Base, new_id
from ..core.clock import utcnow


class AppUser(Base):
    __tablename__ = "AppUser"

    UserID       = Column(String(36), primary_key=True, default=new_id)
    TenantID     = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Email        = Column(String(200), nullable=False)
    PasswordHash = Column(String(255), nullable=False)
    FullName     = Column(String(200))
    IsActive     = Column(Boolean, nullable=False, default=True, server_default=true())
    # Branch scope (scope:branch users are limited to this warehouse's city)
    WarehouseID  = Column(String(36), ForeignKey("Warehouse.WarehouseID"))
    CreatedAt    = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy    = Column(String(36))
    UpdatedAt    = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("TenantID", "Email", name="UQ_AppUser_Tenant_Email"),)

    roles     = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    tenant    = relationship("Tenant")
    warehouse = relationship("Warehouse")


class Permission(Base):
    __tablename__ = "Permission"

    PermissionID = Column(String(36), primary_key=True, default=new_id)
    Code         = Column(String(120), nullable=False, unique=True)
    Description  = Column(String(300))
    IsPlatform   = Column(Boolean, nullable=False, default=False, server_default=false())


class Role(Base):
    __tablename__ = "Role"

    RoleID    = Column(String(36), primary_key=True, default=new_id)
    TenantID  = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False, index=True)
    Code      = Column(String(50), nullable=False)
    Name      = Column(String(100), nullable=False)
    IsSystem  = Column(Boolean, nullable=False, default=False, server_default=false())
    CreatedAt = Column(DateTime, nullable=False, default=utcnow)
    CreatedBy = Column(String(36))

    __table_args__ = (UniqueConstraint("TenantID", "Code", name="UQ_Role_Tenant_Code"),)

    permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")


class RolePermission(Base):
    __tablename__ = "RolePermission"

    RoleID       = Column(String(36), ForeignKey("Role.RoleID"), primary_key=True)
    PermissionID = Column(String(36), ForeignKey("Permission.PermissionID"), primary_key=True)

    role       = relationship("Role", back_populates="permissions")
    permission = relationship("Permission")


class UserRole(Base):
    __tablename__ = "UserRole"

    UserID = Column(String(36), ForeignKey("AppUser.UserID"), primary_key=True)
    RoleID = Column(String(36), ForeignKey("Role.RoleID"), primary_key=True)

    user = relationship("AppUser", back_populates="roles")
    role = relationship("Role")


class RefreshToken(Base):
    __tablename__ = "RefreshToken"

    RefreshTokenID = Column(String(36), primary_key=True, default=new_id)
    TenantID       = Column(String(36), ForeignKey("Tenant.TenantID"), nullable=False)
    UserID         = Column(String(36), ForeignKey("AppUser.UserID"), nullable=False, index=True)
    TokenHash      = Column(String(64), nullable=False, unique=True)
    ExpiresAt      = Column(DateTime, nullable=False)
    RevokedAt      = Column(DateTime)
    CreatedAt      = Column(DateTime, nullable=False, default=utcnow)
