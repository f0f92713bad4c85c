import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import iso
from ..models import Customer, Warehouse
from . import audit_service
from .common import branch_scope, bump_version, check_version, contains_ci, keyset_page, lock_scoped, transaction
from .customer_import import normalize_name, normalize_nit

logger = logging.getLogger(__name__)

CUSTOMER_FIELDS = {
    "name": "Name",
    "businessName": "BusinessName",
    "nit": "Nit",
    "contactName": "ContactName",
    "contactBirthDay": "ContactBirthDay",
    "contactBirthMonth": "ContactBirthMonth",
    "email": "Email",
    "phone": "Phone",
    "address": "Address",
    "city": "City",
    "zone": "Zone",
    "mapsUrl": "MapsUrl",
    "isActive": "IsActive",
}


def serialize_customer(c: Customer) -> Dict[str, Any]:
    return {
        "id": c.CustomerID,
        "name": c.Name,
        "businessName": c.BusinessName,
        "nit": c.Nit,
        "contactName": c.ContactName,
        "contactBirthDay": c.ContactBirthDay,
        "contactBirthMonth": c.ContactBirthMonth,
        "email": c.Email,
        "phone": c.Phone,
        "address": c.Address,
        "city": c.City,
        "zone": c.Zone,
        "mapsUrl": c.MapsUrl,
        "creditEnabled": bool(c.CreditEnabled),
        "creditDays": c.CreditDays,
        "isActive": bool(c.IsActive),
        "version": c.Version,
        "createdAt": iso(c.CreatedAt),
        "updatedAt": iso(c.UpdatedAt),
    }


def resolve_credit(enabled: Optional[bool], days: Optional[int]) -> Tuple[bool, Optional[int]]:
    if enabled:
        if days is None or int(days) <= 0:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="creditDays es requerido cuando el crédito está habilitado",
            )
        return True, int(days)
    return False, None


def _find_duplicate(
    db: Session, tenant_id: str, *, nit: Optional[str], name: Optional[str], exclude_id: Optional[str] = None
) -> Optional[str]:
    """Returns "nit" or "name" when another customer collides."""
    nit_key = normalize_nit(nit)
    name_key = normalize_name(name)
    q = db.query(Customer.CustomerID, Customer.Nit, Customer.Name).filter(Customer.TenantID == tenant_id)
    if exclude_id:
        q = q.filter(Customer.CustomerID != exclude_id)
    for _, other_nit, other_name in q.all():
        if nit_key and normalize_nit(other_nit) == nit_key:
            return "nit"
        if name_key and normalize_name(other_name) == name_key:
            return "name"
    return None


def _raise_duplicate(kind: str, other: bool = False) -> None:
    who = "otro cliente" if other else "un cliente"
    what = "NIT" if kind == "nit" else "nombre"
    raise HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Cliente duplicado: ya existe {who} con el mismo {what}.",
    )


def branch_cities(db: Session, *, tenant_id: str) -> List[str]:
    rows = (
        db.query(Warehouse.City)
        .filter(Warehouse.TenantID == tenant_id, Warehouse.IsActive.is_(True), Warehouse.City.isnot(None))
        .distinct()
        .all()
    )
    return sorted({(r[0] or "").strip().upper() for r in rows if (r[0] or "").strip()})


def create_customer(db: Session, *, actor, payload) -> Customer:
    scoped = branch_scope(actor)
    city = payload.city.strip().upper() if payload.city else None
    if scoped and city != scoped:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Solo puede crear clientes para su sucursal")
    dup = _find_duplicate(db, actor.tenant_id, nit=payload.nit, name=payload.name)
    if dup:
        _raise_duplicate(dup)
    credit_enabled, credit_days = resolve_credit(payload.creditEnabled, payload.creditDays)

    with transaction(db, "create_customer"):
        c = Customer(
            TenantID=actor.tenant_id,
            Name=payload.name.strip(),
            BusinessName=payload.businessName,
            Nit=payload.nit,
            ContactName=payload.contactName,
            ContactBirthDay=payload.contactBirthDay,
            ContactBirthMonth=payload.contactBirthMonth,
            Email=payload.email,
            Phone=payload.phone,
            Address=payload.address,
            City=city,
            Zone=payload.zone,
            MapsUrl=payload.mapsUrl,
            CreditEnabled=credit_enabled,
            CreditDays=credit_days,
            CreatedBy=actor.user_id,
        )
        db.add(c)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.customer.create", entity_type="Customer", entity_id=c.CustomerID,
            after=serialize_customer(c),
        )
    db.refresh(c)
    return c


def list_customers(
    db: Session, *, actor, q: Optional[str], cities: Optional[str], cursor: Optional[str], take: int
):
    query = db.query(Customer).filter(Customer.TenantID == actor.tenant_id)
    if q and q.strip():
        term = q.strip()
        query = query.filter(contains_ci(Customer.Name, term) | contains_ci(Customer.BusinessName, term) | contains_ci(Customer.Nit, term))
    scoped = branch_scope(actor)
    if scoped:
        query = query.filter(func.upper(Customer.City) == scoped)
    elif cities:
        wanted = [c.strip().upper() for c in cities.split(",") if c.strip()]
        if wanted:
            query = query.filter(func.upper(Customer.City).in_(wanted))
    return keyset_page(db, query, Customer, Customer.CreatedAt, Customer.CustomerID, cursor=cursor, take=take)


def get_customer(db: Session, *, actor, customer_id: str) -> Customer:
    scoped = branch_scope(actor)
    q = db.query(Customer).filter(Customer.CustomerID == customer_id, Customer.TenantID == actor.tenant_id)
    if scoped:
        q = q.filter(func.upper(Customer.City) == scoped)
    c = q.first()
    if not c:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return c


def update_customer(db: Session, *, actor, customer_id: str, version: int, changes: Dict[str, Any]) -> Customer:
    scoped = branch_scope(actor)
    with transaction(db, "update_customer"):
        c = lock_scoped(db, Customer, Customer.CustomerID, customer_id, actor.tenant_id, "Customer not found")
        if scoped and (c.City or "").strip().upper() != scoped:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
        check_version(c, version)

        if "city" in changes:
            changes["city"] = changes["city"].strip().upper() if changes["city"] else None
            if scoped and changes["city"] != scoped:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN, detail="No puede cambiar el cliente a otra sucursal"
                )
        if "nit" in changes or "name" in changes:
            dup = _find_duplicate(
                db, actor.tenant_id,
                nit=changes.get("nit", c.Nit) if "nit" in changes else None,
                name=changes.get("name", c.Name) if "name" in changes else None,
                exclude_id=c.CustomerID,
            )
            if dup:
                _raise_duplicate(dup, other=True)

        before = serialize_customer(c)
        for key, value in changes.items():
            if key in CUSTOMER_FIELDS:
                setattr(c, CUSTOMER_FIELDS[key], value)
        if "creditEnabled" in changes or "creditDays" in changes:
            enabled = changes.get("creditEnabled", c.CreditEnabled)
            days = changes.get("creditDays", c.CreditDays)
            c.CreditEnabled, c.CreditDays = resolve_credit(enabled, days)
        bump_version(c)
        db.flush()
        after = serialize_customer(c)
        changed = [k for k in after if before.get(k) != after.get(k) and k not in ("version", "updatedAt")]
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="sales.customer.update", entity_type="Customer", entity_id=c.CustomerID,
            before={k: before[k] for k in changed}, after={k: after[k] for k in changed},
        )
    db.refresh(c)
    return c
