"""
Customer CSV import (platform tool).

Headers are matched after normalization (no diacritics, lowercase,
non-alphanumerics collapsed to single spaces), so "Correo Electrónico"
and "correo_electronico" both map to "correo electronico".
"""
import csv
import io
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from ..models import Customer, Tenant
from . import audit_service
from .common import transaction

logger = logging.getLogger(__name__)

MAX_ERRORS = 50
MAX_PREVIEW = 10


def normalize_header(h: str) -> str:
    v = unicodedata.normalize("NFD", h or "")
    v = "".join(ch for ch in v if unicodedata.category(ch) != "Mn")
    v = v.replace("\ufeff", "").lower()
    v = re.sub(r"[^a-z0-9]+", " ", v)
    return v.strip()


def _clean(v: Optional[str]) -> Optional[str]:
    if v is None:
        return None
    s = re.sub(r"\s+", " ", str(v)).strip()
    return s or None


def normalize_nit(nit: Optional[str]) -> Optional[str]:
    if not nit:
        return None
    s = re.sub(r"[^0-9a-z]", "", nit.lower())
    return s or None


def normalize_name(name: Optional[str]) -> Optional[str]:
    if not name:
        return None
    s = re.sub(r"\s+", " ", name).strip().lower()
    return s or None


@dataclass
class ParsedCustomer:
    row: int
    name: str
    nit: Optional[str] = None
    contact_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    zone: Optional[str] = None
    maps_url: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "row": self.row,
            "name": self.name,
            "nit": self.nit,
            "contactName": self.contact_name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "city": self.city,
            "zone": self.zone,
            "mapsUrl": self.maps_url,
        }


@dataclass
class ParseResult:
    total_rows: int = 0
    customers: List[ParsedCustomer] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    duplicates_in_file: int = 0


def _split_contact(raw: Optional[str]):
    """'Juan Perez - Farmacia Central' -> ('Juan Perez', 'Farmacia Central')."""
    if not raw:
        return None, None
    if "-" in raw:
        left, right = raw.split("-", 1)
        return _clean(left), _clean(right)
    return _clean(raw), None


def parse_customers_csv(text: str) -> ParseResult:
    result = ParseResult()
    content = (text or "").lstrip("\ufeff")
    if not content.strip():
        return result

    # Delimiter guessed from the header line
    first_line = content.splitlines()[0]
    delimiter = max((",", ";", "\t"), key=first_line.count)
    reader = csv.reader(io.StringIO(content), delimiter=delimiter)

    try:
        header = next(reader)
    except StopIteration:
        return result
    index = {normalize_header(h): i for i, h in enumerate(header)}

    def col(row: List[str], name: str) -> Optional[str]:
        i = index.get(name)
        if i is None or i >= len(row):
            return None
        return _clean(row[i])

    seen = set()
    for n, row in enumerate(reader, start=2):
        if not any((c or "").strip() for c in row):
            continue
        result.total_rows += 1

        contact_raw = col(row, "nombre de contacto")
        contact_left, contact_right = _split_contact(contact_raw)
        name = col(row, "nombre") or contact_right or contact_raw
        if not name:
            if len(result.errors) < MAX_ERRORS:
                result.errors.append({"row": n, "message": "Missing name"})
            continue

        nit = col(row, "nit")
        key = ("nit", normalize_nit(nit)) if normalize_nit(nit) else ("name", normalize_name(name))
        if key in seen:
            result.duplicates_in_file += 1
            continue
        seen.add(key)

        city = col(row, "ciudad")
        result.customers.append(ParsedCustomer(
            row=n,
            name=name,
            nit=nit,
            contact_name=contact_left if contact_raw else None,
            email=col(row, "correo electronico"),
            phone=col(row, "telefono 1") or col(row, "telefono movil"),
            address=col(row, "direccion"),
            city=city.upper() if city else None,
            zone=col(row, "zona"),
            maps_url=col(row, "ubicacion"),
        ))
    return result


def import_customers(db: Session, *, tenant_id: str, csv_text: str, dry_run: bool, actor) -> Dict[str, Any]:
    tenant = db.get(Tenant, tenant_id)
    if not tenant or not tenant.IsActive:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")

    parsed = parse_customers_csv(csv_text)
    if parsed.total_rows == 0:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="CSV vacío o sin filas")

    existing = db.query(Customer.Nit, Customer.Name).filter(Customer.TenantID == tenant_id).all()
    existing_nits = {normalize_nit(r[0]) for r in existing if normalize_nit(r[0])}
    existing_names = {normalize_name(r[1]) for r in existing if r[1]}

    to_create: List[ParsedCustomer] = []
    skipped_existing = 0
    for c in parsed.customers:
        nit_key = normalize_nit(c.nit)
        if (nit_key and nit_key in existing_nits) or normalize_name(c.name) in existing_names:
            skipped_existing += 1
            continue
        to_create.append(c)

    summary = {
        "dryRun": dry_run,
        "totalRows": parsed.total_rows,
        "toCreate": len(to_create),
        "skippedExisting": skipped_existing,
        "skippedDuplicateInFile": parsed.duplicates_in_file,
        "errors": parsed.errors[:MAX_ERRORS],
        "preview": [c.as_dict() for c in to_create[:MAX_PREVIEW]],
    }
    if dry_run:
        return summary

    with transaction(db, "import_customers"):
        for c in to_create:
            db.add(Customer(
                TenantID=tenant_id,
                Name=c.name,
                Nit=c.nit,
                ContactName=c.contact_name,
                Email=c.email,
                Phone=c.phone,
                Address=c.address,
                City=c.city,
                Zone=c.zone,
                MapsUrl=c.maps_url,
                CreatedBy=actor.user_id,
            ))
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="platform.import.customers", entity_type="Tenant", entity_id=tenant_id,
            metadata={k: summary[k] for k in ("totalRows", "toCreate", "skippedExisting", "skippedDuplicateInFile")},
        )
    summary["created"] = len(to_create)
    logger.info("customers imported: tenant=%s created=%s", tenant_id, len(to_create))
    return summary
