from .tenant import Tenant, TenantModule, TenantDomain, TenantSequence, ContactInfo
from .user import AppUser, Permission, Role, RolePermission, UserRole, RefreshToken
from .audit import AuditEvent, AuditImmutableError
from .warehouse import Warehouse, Location
from .product import Product, Batch
from .stock import (
    InventoryBalance, StockMovement, StockMovementRequest, StockMovementRequestItem,
    StockReturn, StockReturnItem,
)
from .customer import Customer
from .sales import Quote, QuoteLine, SalesOrder, SalesOrderLine, SalesOrderReservation
from .report_schedule import ReportSchedule
__all__ = [
    "Tenant", "TenantModule", "TenantDomain", "TenantSequence", "ContactInfo",
    "AppUser", "Permission", "Role", "RolePermission", "UserRole", "RefreshToken",
    "AuditEvent", "AuditImmutableError", "Warehouse", "Location", "Product", "Batch",
    "InventoryBalance", "StockMovement", "StockMovementRequest", "StockMovementRequestItem",
    "StockReturn", "StockReturnItem", "Customer",
    "Quote", "QuoteLine", "SalesOrder", "SalesOrderLine", "SalesOrderReservation", "ReportSchedule",
]
