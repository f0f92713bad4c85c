"""Tenant self-service: branding, subscription status and the public contact box."""
import logging
import math
from typing import Any, Dict, Optional

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import iso, utcnow
from ..core.config import get_settings
from ..domain.constants import DEFAULT_CONTACT_BODY, DEFAULT_CONTACT_HEADER
from ..models import ContactInfo, Tenant, Warehouse
from . import audit_service
from .auth_service import resolve_tenant_by_host
from .common import transaction
from .mailer import MailerNotConfigured, get_mailer

logger = logging.getLogger(__name__)

EXPIRING_SOON_DAYS = 90

BRANDING_FIELDS = {
    "logoUrl": "LogoUrl",
    "brandPrimary": "BrandPrimary",
    "brandSecondary": "BrandSecondary",
    "brandTertiary": "BrandTertiary",
    "defaultTheme": "DefaultTheme",
}


def serialize_branding(t: Tenant) -> Dict[str, Any]:
    return {
        "tenantId": t.TenantID,
        "tenantName": t.Name,
        "logoUrl": t.LogoUrl,
        "brandPrimary": t.BrandPrimary,
        "brandSecondary": t.BrandSecondary,
        "brandTertiary": t.BrandTertiary,
        "defaultTheme": t.DefaultTheme,
    }


def _active_tenant(db: Session, tenant_id: str) -> Tenant:
    t = db.query(Tenant).filter(Tenant.TenantID == tenant_id, Tenant.IsActive.is_(True)).first()
    if not t:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return t


def public_branding(db: Session, host: Optional[str]) -> Dict[str, Any]:
    tenant_id = resolve_tenant_by_host(db, host)
    if not tenant_id:
        # Single-tenant installs work without a verified domain
        candidates = db.query(Tenant.TenantID).filter(Tenant.IsActive.is_(True)).limit(2).all()
        if len(candidates) == 1:
            tenant_id = candidates[0][0]
    if not tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found for host")
    return serialize_branding(_active_tenant(db, tenant_id))


def get_branding(db: Session, *, tenant_id: str) -> Dict[str, Any]:
    return serialize_branding(_active_tenant(db, tenant_id))


def update_branding(db: Session, *, tenant_id: str, changes: Dict[str, Any], actor) -> Dict[str, Any]:
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="At least one field must be provided")
    with transaction(db, "update_branding"):
        tenant = _active_tenant(db, tenant_id)
        before = serialize_branding(tenant)
        for key, value in changes.items():
            setattr(tenant, BRANDING_FIELDS[key], value)
        tenant.Version = int(tenant.Version or 0) + 1
        audit_service.append(
            db, tenant_id=tenant_id, actor_user_id=actor.user_id,
            action="tenant.branding.update", entity_type="Tenant", entity_id=tenant_id,
            before={k: before[k] for k in changes}, after=changes,
        )
    return serialize_branding(tenant)


def subscription_status(days_remaining: Optional[int]) -> str:
    if days_remaining is None:
        return "active"
    if days_remaining < 0:
        return "expired"
    if days_remaining <= EXPIRING_SOON_DAYS:
        return "expiring_soon"
    return "active"


def days_until(expires_at, now=None) -> Optional[int]:
    if expires_at is None:
        return None
    diff = (expires_at - (now or utcnow())).total_seconds()
    return math.ceil(diff / 86400)


def get_subscription(db: Session, *, tenant_id: str) -> Dict[str, Any]:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    active_branches = (
        db.query(func.count(Warehouse.WarehouseID))
        .filter(Warehouse.TenantID == tenant_id, Warehouse.IsActive.is_(True))
        .scalar()
    )
    days = days_until(tenant.SubscriptionExpiresAt)
    return {
        "id": tenant.TenantID,
        "name": tenant.Name,
        "branchLimit": tenant.BranchLimit,
        "activeBranches": int(active_branches or 0),
        "contactName": tenant.ContactName,
        "contactEmail": tenant.ContactEmail,
        "contactPhone": tenant.ContactPhone,
        "subscriptionExpiresAt": iso(tenant.SubscriptionExpiresAt),
        "status": subscription_status(days),
        "daysRemaining": days,
    }


def branch_action(requested: int, current: int) -> str:
    if requested > current:
        return "aumentar"
    if requested < current:
        return "reducir"
    return "mantener"


def request_extension(db: Session, *, tenant_id: str, branch_limit: int, subscription_months: int, actor) -> Dict[str, Any]:
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")

    action = branch_action(branch_limit, tenant.BranchLimit)
    expires = tenant.SubscriptionExpiresAt.strftime("%d/%m/%Y") if tenant.SubscriptionExpiresAt else "Sin fecha"
    body = "\n".join([
        "Solicitud de Extensión de Suscripción",
        "",
        f"Tenant: {tenant.Name}",
        f"Contacto: {tenant.ContactName or '-'} ({tenant.ContactEmail or '-'})",
        f"Teléfono: {tenant.ContactPhone or '-'}",
        "",
        f"Sucursales actuales: {tenant.BranchLimit}",
        f"Sucursales solicitadas: {branch_limit} ({action})",
        f"Tiempo de extensión: {subscription_months} meses",
        f"Vence actualmente: {expires}",
        "",
        "Por favor revisar y aprobar esta solicitud.",
    ])
    to = get_settings().PLATFORM_CONTACT_EMAIL
    subject = f"Solicitud de Extensión - {tenant.Name}"

    email_sent = False
    mailer = get_mailer()
    if mailer.configured:
        try:
            mailer.send_email(to, subject, body)
            email_sent = True
        except (MailerNotConfigured, OSError) as e:
            logger.warning("extension request mail failed for tenant %s: %s", tenant_id, e)

    audit_service.append_committed(
        db, tenant_id=tenant_id, actor_user_id=actor.user_id,
        action="tenant.subscription.request-extension", entity_type="Tenant", entity_id=tenant_id,
        metadata={"branchLimit": branch_limit, "subscriptionMonths": subscription_months, "action": action},
    )
    return {
        "message": "Extension request created successfully",
        "emailSent": email_sent,
        "preview": {"to": to, "subject": subject, "body": body},
    }


# ---- Contact info (single global row) ----
def serialize_contact(c: ContactInfo) -> Dict[str, Any]:
    return {"id": c.ContactInfoID, "modalHeader": c.ModalHeader, "modalBody": c.ModalBody}


def get_contact_info(db: Session) -> ContactInfo:
    row = db.query(ContactInfo).order_by(ContactInfo.UpdatedAt).first()
    if row is None:
        with transaction(db, "contact_info_default"):
            row = ContactInfo(ModalHeader=DEFAULT_CONTACT_HEADER, ModalBody=DEFAULT_CONTACT_BODY)
            db.add(row)
    return row


def update_contact_info(db: Session, *, modal_header: str, modal_body: str, actor) -> ContactInfo:
    with transaction(db, "update_contact_info"):
        row = db.query(ContactInfo).order_by(ContactInfo.UpdatedAt).first()
        if row is None:
            row = ContactInfo(ModalHeader=modal_header, ModalBody=modal_body, UpdatedBy=actor.user_id)
            db.add(row)
        else:
            row.ModalHeader = modal_header
            row.ModalBody = modal_body
            row.UpdatedBy = actor.user_id
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="contact.info.update", entity_type="ContactInfo", entity_id=row.ContactInfoID,
            metadata={"modalHeader": modal_header, "modalBody": modal_body},
        )
    return row
