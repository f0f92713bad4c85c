# backend/pharmaflow/domain/constants.py

"""
Single source for permission codes, module codes, system roles,
sequence keys and stock reference types.
"""

from typing import Dict, Final, FrozenSet, Tuple

# ---- Permissions ----
CATALOG_READ: Final[str] = "catalog:read"
CATALOG_WRITE: Final[str] = "catalog:write"
STOCK_READ: Final[str] = "stock:read"
STOCK_MANAGE: Final[str] = "stock:manage"
STOCK_MOVE: Final[str] = "stock:move"
STOCK_DELIVER: Final[str] = "stock:deliver"
SCOPE_BRANCH: Final[str] = "scope:branch"
SALES_ORDER_READ: Final[str] = "sales:order:read"
SALES_ORDER_WRITE: Final[str] = "sales:order:write"
SALES_DELIVERY_READ: Final[str] = "sales:delivery:read"
SALES_DELIVERY_WRITE: Final[str] = "sales:delivery:write"
REPORT_SALES_READ: Final[str] = "report:sales:read"
REPORT_STOCK_READ: Final[str] = "report:stock:read"
ADMIN_USERS_MANAGE: Final[str] = "admin:users:manage"
AUDIT_READ: Final[str] = "audit:read"
PLATFORM_TENANTS_MANAGE: Final[str] = "platform:tenants:manage"

PERMISSION_DESCRIPTIONS: Final[Dict[str, str]] = {
    CATALOG_READ: "Read catalog",
    CATALOG_WRITE: "Manage catalog",
    STOCK_READ: "Read stock",
    STOCK_MANAGE: "Manage stock master data",
    STOCK_MOVE: "Create stock movements",
    STOCK_DELIVER: "Deliver stock for sales",
    SCOPE_BRANCH: "Restricted to the assigned branch",
    SALES_ORDER_READ: "Read sales orders",
    SALES_ORDER_WRITE: "Manage sales orders",
    SALES_DELIVERY_READ: "Read deliveries",
    SALES_DELIVERY_WRITE: "Manage deliveries",
    REPORT_SALES_READ: "Read sales reports",
    REPORT_STOCK_READ: "Read stock reports",
    ADMIN_USERS_MANAGE: "Manage users and roles",
    AUDIT_READ: "Read audit trail",
    PLATFORM_TENANTS_MANAGE: "Manage tenants (platform)",
}

ALL_PERMISSIONS: Final[Tuple[str, ...]] = tuple(PERMISSION_DESCRIPTIONS)

# ---- Modules ----
MODULE_WAREHOUSE: Final[str] = "WAREHOUSE"
MODULE_SALES: Final[str] = "SALES"
MODULE_LABORATORY: Final[str] = "LABORATORY"
ALL_MODULES: Final[Tuple[str, ...]] = (MODULE_WAREHOUSE, MODULE_SALES, MODULE_LABORATORY)

# ---- System roles ----
ROLE_TENANT_ADMIN: Final[str] = "TENANT_ADMIN"
ROLE_PLATFORM_ADMIN: Final[str] = "PLATFORM_ADMIN"

# Everything except the platform permission and the branch restriction.
TENANT_WIDE_PERMISSIONS: Final[FrozenSet[str]] = frozenset(
    p for p in ALL_PERMISSIONS if p not in (PLATFORM_TENANTS_MANAGE, SCOPE_BRANCH)
)

_BRANCH_SELLER = frozenset({
    SCOPE_BRANCH, CATALOG_READ, STOCK_READ, STOCK_DELIVER,
    SALES_ORDER_READ, SALES_ORDER_WRITE, SALES_DELIVERY_READ, SALES_DELIVERY_WRITE,
    REPORT_SALES_READ,
})

SYSTEM_ROLES: Final[Dict[str, Tuple[str, FrozenSet[str]]]] = {
    "VENTAS": ("Ventas", frozenset({
        CATALOG_READ, STOCK_READ, SALES_ORDER_READ, SALES_ORDER_WRITE,
        SALES_DELIVERY_READ, REPORT_SALES_READ,
    })),
    "LOGISTICA": ("Logística", frozenset({
        STOCK_READ, STOCK_MOVE, STOCK_DELIVER, SALES_ORDER_READ,
        SALES_DELIVERY_READ, SALES_DELIVERY_WRITE, REPORT_STOCK_READ,
    })),
    "BRANCH_SELLER": ("Vendedor de sucursal", _BRANCH_SELLER),
    "BRANCH_ADMIN": ("Administrador de sucursal", _BRANCH_SELLER | {STOCK_MOVE}),
    "LABORATORIO": ("Laboratorio", frozenset({CATALOG_READ, STOCK_READ, STOCK_MANAGE})),
    ROLE_TENANT_ADMIN: ("Administrador", TENANT_WIDE_PERMISSIONS),
}

# ---- Sequences ----
SEQUENCE_KEYS: Final[Tuple[str, ...]] = ("MS", "OP", "LI", "OA", "OC", "OV", "LOT", "COT")
SEQ_MOVEMENT: Final[str] = "MS"
SEQ_SALES_ORDER: Final[str] = "OV"
SEQ_LOT: Final[str] = "LOT"
SEQ_QUOTE: Final[str] = "COT"

# ---- Stock movement reference types ----
REF_BATCH: Final[str] = "BATCH"
REF_SALES_ORDER: Final[str] = "SALES_ORDER"
REF_RETURN: Final[str] = "RETURN"
REF_BULK_TRANSFER: Final[str] = "BULK_TRANSFER"
REF_REQUEST_BULK_FULFILL: Final[str] = "REQUEST_BULK_FULFILL"

# ---- Branch scope ----
BRANCH_CITY_MISSING: Final[str] = "__MISSING__"
MSG_SELECT_BRANCH: Final[str] = "Seleccione su sucursal antes de continuar"
NO_CITY_LABEL: Final[str] = "SIN CIUDAD"

# ---- Platform ----
PLATFORM_TENANT_NAME: Final[str] = "Supernovatel"
DOMAIN_VERIFICATION_PATH: Final[str] = "/.well-known/pharmaflow-domain-verification"
DEFAULT_CONTACT_HEADER: Final[str] = "Contactos"
DEFAULT_CONTACT_BODY: Final[str] = (
    "Únete a este sistema o solicita el tuyo personalizado:\n"
    "- contactos@supernovatel.com\n"
    "- WhatsApp: +591 65164773"
)
