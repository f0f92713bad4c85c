"""Custom tenant domains: normalization, validation and ownership verification."""
from datetime import timedelta
import ipaddress
import logging
import re
import secrets
from typing import Any, Dict, List, Optional

import requests
from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ..core.clock import iso, utcnow
from ..core.errors import ApiError
from ..domain.constants import DOMAIN_VERIFICATION_PATH
from ..models import Tenant, TenantDomain
from . import audit_service
from .common import transaction

logger = logging.getLogger(__name__)

TOKEN_TTL = timedelta(hours=24)
DEFAULT_VERIFY_TIMEOUT_MS = 6000

_ALLOWED = re.compile(r"^[a-z0-9.-]+$")


def normalize_domain(raw: str) -> str:
    v = (raw or "").strip().lower()
    v = re.sub(r"^[a-z][a-z0-9+.-]*://", "", v)
    v = v.split("/", 1)[0]
    v = v.split("?", 1)[0].split("#", 1)[0]
    v = re.sub(r":\d+$", "", v)
    return v


def _is_ip(v: str) -> bool:
    try:
        ipaddress.ip_address(v.strip("[]"))
        return True
    except ValueError:
        return False


def validate_custom_domain(domain: str) -> Optional[str]:
    """Returns an error message, or None when the domain is acceptable."""
    if len(domain) < 3 or len(domain) > 255:
        return "Domain length must be between 3 and 255"
    if domain == "localhost" or domain.endswith(".local"):
        return "Local domains are not allowed"
    if _is_ip(domain):
        return "IP addresses are not allowed"
    if "." not in domain:
        return "Domain must contain a dot"
    if not _ALLOWED.match(domain):
        return "Domain contains invalid characters"
    if domain.startswith(".") or domain.endswith(".") or ".." in domain:
        return "Domain has empty labels"
    for label in domain.split("."):
        if len(label) > 63:
            return "Domain label too long"
        if label.startswith("-") or label.endswith("-"):
            return "Domain labels cannot start or end with '-'"
    return None


def normalize_and_validate(raw: str) -> str:
    domain = normalize_domain(raw)
    err = validate_custom_domain(domain)
    if err:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=err)
    return domain


def verification_url(domain: str) -> str:
    return f"https://{domain}{DOMAIN_VERIFICATION_PATH}"


def serialize_domain(d: TenantDomain) -> Dict[str, Any]:
    return {
        "id": d.TenantDomainID,
        "domain": d.Domain,
        "isPrimary": bool(d.IsPrimary),
        "verifiedAt": iso(d.VerifiedAt),
        "verificationTokenExpiresAt": iso(d.VerificationTokenExpiresAt),
        "createdAt": iso(d.CreatedAt),
    }


def list_domains(db: Session, *, tenant_id: str) -> List[TenantDomain]:
    if not db.get(Tenant, tenant_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return (
        db.query(TenantDomain)
        .filter(TenantDomain.TenantID == tenant_id)
        .order_by(TenantDomain.IsPrimary.desc(), TenantDomain.Domain.asc())
        .all()
    )


def create_domain(db: Session, *, tenant_id: str, raw_domain: str, is_primary: bool, actor) -> Dict[str, Any]:
    domain = normalize_and_validate(raw_domain)
    with transaction(db, "create_domain", conflict_detail="Domain already in use"):
        if not db.get(Tenant, tenant_id):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
        if db.query(TenantDomain).filter(TenantDomain.Domain == domain).first():
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Domain already in use")

        if is_primary:
            db.query(TenantDomain).filter(
                TenantDomain.TenantID == tenant_id, TenantDomain.IsPrimary.is_(True)
            ).update({TenantDomain.IsPrimary: False}, synchronize_session=False)

        token = secrets.token_hex(24)
        expires = utcnow() + TOKEN_TTL
        row = TenantDomain(
            TenantID=tenant_id,
            Domain=domain,
            IsPrimary=bool(is_primary),
            VerificationToken=token,
            VerificationTokenExpiresAt=expires,
            CreatedBy=actor.user_id,
        )
        db.add(row)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.tenant.domain.create", entity_type="TenantDomain", entity_id=row.TenantDomainID,
            after={"tenantId": tenant_id, "domain": domain, "isPrimary": bool(is_primary)},
        )
    return {
        "id": row.TenantDomainID,
        "domain": domain,
        "isPrimary": bool(is_primary),
        "verification": {"token": token, "url": verification_url(domain), "expiresAt": iso(expires)},
    }


def fetch_verification_token(domain: str, timeout_ms: int = DEFAULT_VERIFY_TIMEOUT_MS) -> Optional[str]:
    """Tries https then http; redirects are not followed. Returns the body text or None."""
    timeout = max(1.0, timeout_ms / 1000.0)
    for scheme in ("https", "http"):
        url = f"{scheme}://{domain}{DOMAIN_VERIFICATION_PATH}"
        try:
            resp = requests.get(url, timeout=timeout, allow_redirects=False)
        except requests.RequestException as e:
            logger.info("domain verification fetch failed: %s (%s)", url, type(e).__name__)
            continue
        if resp.status_code != 200:
            continue
        text = (resp.text or "").strip()
        if text:
            return text
    return None


def verify_domain(db: Session, *, tenant_id: str, raw_domain: str, timeout_ms: Optional[int], actor) -> Dict[str, Any]:
    domain = normalize_domain(raw_domain)
    row = (
        db.query(TenantDomain)
        .filter(TenantDomain.TenantID == tenant_id, TenantDomain.Domain == domain)
        .first()
    )
    if not row:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Domain not found")
    if row.VerifiedAt is not None:
        return {"ok": True, "alreadyVerified": True, "domain": domain, "verifiedAt": iso(row.VerifiedAt)}
    if not row.VerificationToken:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="No verification token; recreate the domain")
    if row.VerificationTokenExpiresAt and row.VerificationTokenExpiresAt < utcnow():
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Verification token expired")

    observed = fetch_verification_token(domain, timeout_ms or DEFAULT_VERIFY_TIMEOUT_MS)
    if observed is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Verification failed: unreachable")
    if observed != row.VerificationToken:
        raise ApiError(
            status.HTTP_409_CONFLICT, "Verification failed: token mismatch", meta={"observed": observed[:200]}
        )

    with transaction(db, "verify_domain"):
        row.VerifiedAt = utcnow()
        row.VerificationToken = None
        row.VerificationTokenExpiresAt = None
        row.Version = int(row.Version or 0) + 1
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.tenant.domain.verify", entity_type="TenantDomain", entity_id=row.TenantDomainID,
            after={"tenantId": tenant_id, "domain": domain},
        )
    return {"ok": True, "alreadyVerified": False, "domain": domain, "verifiedAt": iso(row.VerifiedAt)}


def token_for_host(db: Session, host: Optional[str]) -> Optional[str]:
    """Pending (unverified, unexpired) token for the well-known endpoint."""
    if not host:
        return None
    row = db.query(TenantDomain).filter(TenantDomain.Domain == host).first()
    if not row or row.VerifiedAt is not None or not row.VerificationToken:
        return None
    if row.VerificationTokenExpiresAt and row.VerificationTokenExpiresAt < utcnow():
        return None
    return row.VerificationToken
