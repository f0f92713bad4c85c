"""Idempotent seed: platform tenant + admin, demo tenant with sample products.

    python -m pharmaflow.scripts.seed
"""
import logging
import os
from contextlib import contextmanager
from decimal import Decimal

from sqlalchemy import func, select

from pharmaflow.core.config import get_settings
from pharmaflow.core.db import SessionLocal
from pharmaflow.core.logging_setup import configure_logging
from pharmaflow.core.security import hash_password
from pharmaflow.domain.constants import (
    PLATFORM_TENANT_NAME,
    PLATFORM_TENANTS_MANAGE,
    ROLE_PLATFORM_ADMIN,
    TENANT_WIDE_PERMISSIONS,
)
from pharmaflow.models import AppUser, Product, Role, Tenant, UserRole
from pharmaflow.services.platform_service import provision_tenant
from pharmaflow.services.rbac_service import ensure_permission_catalog, ensure_system_roles, set_role_permissions

logger = logging.getLogger("pharmaflow.seed")

# ---------- small helpers ----------


@contextmanager
def session_scope():
    """One-shot session (rollback on error)."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_one(db, model, **by):
    return db.execute(select(model).filter_by(**by)).scalars().first()


def get_or_create(db, model, unique_by: dict, defaults: dict | None = None):
    """Look up by unique_by, create when missing (caller commits)."""
    inst = get_one(db, model, **unique_by)
    if inst:
        return inst, False
    inst = model(**{**unique_by, **(defaults or {})})
    db.add(inst)
    db.flush()
    return inst, True


def _user_by_email(db, email: str):
    return db.query(AppUser).filter(func.lower(AppUser.Email) == email.strip().lower()).first()


# ---------- seed data ----------

DEMO_TENANT = {
    "name": "Farmacia Demo",
    "branch_count": 2,
    "admin_email": "admin@farmaciademo.com",
    "admin_password": "Demo12345!",
    "contact_name": "Demo",
    "contact_email": "contacto@farmaciademo.com",
    "contact_phone": "+59170000000",
    "subscription_months": 12,
}

PRODUCTS = [
    {"Sku": "PARA-500", "Name": "Paracetamol 500mg", "GenericName": "Paracetamol", "Cost": "0.40", "Price": "1.00"},
    {"Sku": "IBU-400", "Name": "Ibuprofeno 400mg", "GenericName": "Ibuprofeno", "Cost": "0.55", "Price": "1.50"},
    {"Sku": "AMOX-500", "Name": "Amoxicilina 500mg", "GenericName": "Amoxicilina", "Cost": "1.10", "Price": "2.80"},
    {"Sku": "OMEP-20", "Name": "Omeprazol 20mg", "GenericName": "Omeprazol", "Cost": "0.70", "Price": "1.90"},
]


def ensure_platform_tenant(db, admin_email: str, admin_password: str) -> Tenant:
    """Platform tenant, PLATFORM_ADMIN role (tenant-wide + platform) and its admin user."""
    tenant, _ = get_or_create(db, Tenant, {"Name": PLATFORM_TENANT_NAME}, defaults={"BranchLimit": 1})
    ensure_system_roles(db, tenant.TenantID)

    catalog = ensure_permission_catalog(db)
    role, _ = get_or_create(
        db, Role,
        {"TenantID": tenant.TenantID, "Code": ROLE_PLATFORM_ADMIN},
        defaults={"Name": "Administrador de plataforma", "IsSystem": True},
    )
    set_role_permissions(db, role, TENANT_WIDE_PERMISSIONS | {PLATFORM_TENANTS_MANAGE}, catalog)

    user = _user_by_email(db, admin_email)
    if user is None:
        user = AppUser(
            TenantID=tenant.TenantID,
            Email=admin_email.strip().lower(),
            PasswordHash=hash_password(admin_password),
            FullName="Platform Admin",
        )
        db.add(user)
        db.flush()
        logger.info("platform admin created: %s", user.Email)
    if not db.query(UserRole).filter(UserRole.UserID == user.UserID, UserRole.RoleID == role.RoleID).first():
        db.add(UserRole(UserID=user.UserID, RoleID=role.RoleID))
    db.flush()
    return tenant


def ensure_demo_tenant(db) -> Tenant:
    tenant = get_one(db, Tenant, Name=DEMO_TENANT["name"])
    if tenant is None:
        if _user_by_email(db, DEMO_TENANT["admin_email"]):
            raise RuntimeError(f"{DEMO_TENANT['admin_email']} belongs to another tenant")
        tenant = provision_tenant(db, **DEMO_TENANT)
        logger.info("demo tenant provisioned: %s", tenant.TenantID)

    for p in PRODUCTS:
        defaults = {k: v for k, v in p.items() if k != "Sku"}
        defaults["Cost"] = Decimal(defaults["Cost"])
        defaults["Price"] = Decimal(defaults["Price"])
        get_or_create(db, Product, {"TenantID": tenant.TenantID, "Sku": p["Sku"]}, defaults=defaults)
    return tenant


def run():
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    admin_email = os.getenv("PLATFORM_ADMIN_EMAIL", settings.PLATFORM_CONTACT_EMAIL)
    admin_password = os.getenv("PLATFORM_ADMIN_PASSWORD")
    if not admin_password:
        raise SystemExit("PLATFORM_ADMIN_PASSWORD is required")

    with session_scope() as db:
        logger.info(">> Seeding: platform tenant")
        ensure_platform_tenant(db, admin_email, admin_password)

    with session_scope() as db:
        logger.info(">> Seeding: demo tenant + products")
        ensure_demo_tenant(db)

    logger.info("Seed OK")


if __name__ == "__main__":
    run()
