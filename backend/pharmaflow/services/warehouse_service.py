import logging
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.clock import iso
from ..models import Location, Tenant, Warehouse
from . import audit_service
from .common import bump_version, check_version, get_scoped, keyset_page, lock_scoped, transaction

logger = logging.getLogger(__name__)

DEFAULT_LOCATION_CODE = "BIN-01"


def serialize_location(loc: Location) -> Dict[str, Any]:
    return {
        "id": loc.LocationID,
        "warehouseId": loc.WarehouseID,
        "code": loc.Code,
        "type": loc.Type,
        "isActive": bool(loc.IsActive),
        "version": loc.Version,
    }


def serialize_warehouse(wh: Warehouse) -> Dict[str, Any]:
    return {
        "id": wh.WarehouseID,
        "code": wh.Code,
        "name": wh.Name,
        "city": wh.City,
        "isActive": bool(wh.IsActive),
        "version": wh.Version,
        "createdAt": iso(wh.CreatedAt),
        "updatedAt": iso(wh.UpdatedAt),
    }


def list_warehouses(db: Session, *, tenant_id: str, cursor: Optional[str], take: int):
    q = db.query(Warehouse).filter(Warehouse.TenantID == tenant_id)
    return keyset_page(db, q, Warehouse, Warehouse.Code, Warehouse.WarehouseID, cursor=cursor, take=take, descending=False)


def list_locations(db: Session, *, tenant_id: str, warehouse_id: str) -> List[Location]:
    get_scoped(db, Warehouse, warehouse_id, tenant_id, "Warehouse not found")
    return (
        db.query(Location)
        .filter(Location.TenantID == tenant_id, Location.WarehouseID == warehouse_id)
        .order_by(Location.Code.asc())
        .all()
    )


def create_warehouse(db: Session, *, actor, code: str, name: str, city: Optional[str]) -> Warehouse:
    code = code.strip().upper()
    with transaction(db, "create_warehouse", conflict_detail="Warehouse code already exists"):
        tenant = lock_scoped(db, Tenant, Tenant.TenantID, actor.tenant_id, actor.tenant_id, "Tenant not found")
        active = (
            db.query(func.count(Warehouse.WarehouseID))
            .filter(Warehouse.TenantID == actor.tenant_id, Warehouse.IsActive.is_(True))
            .scalar()
        )
        if int(active or 0) >= tenant.BranchLimit:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Branch limit reached")
        wh = Warehouse(
            TenantID=actor.tenant_id,
            Code=code,
            Name=name.strip(),
            City=city.strip().upper() if city else None,
            CreatedBy=actor.user_id,
        )
        db.add(wh)
        db.flush()
        db.add(Location(
            TenantID=actor.tenant_id,
            WarehouseID=wh.WarehouseID,
            Code=DEFAULT_LOCATION_CODE,
            Type="BIN",
            CreatedBy=actor.user_id,
        ))
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="warehouse.create", entity_type="Warehouse", entity_id=wh.WarehouseID,
            after={"code": code, "name": wh.Name, "city": wh.City},
        )
    db.refresh(wh)
    return wh


def update_warehouse(db: Session, *, actor, warehouse_id: str, version: int, changes: Dict[str, Any]) -> Warehouse:
    with transaction(db, "update_warehouse"):
        wh = lock_scoped(db, Warehouse, Warehouse.WarehouseID, warehouse_id, actor.tenant_id, "Warehouse not found")
        check_version(wh, version)
        before = serialize_warehouse(wh)
        if "name" in changes and changes["name"] is not None:
            wh.Name = changes["name"].strip()
        if "city" in changes:
            city = changes["city"]
            wh.City = city.strip().upper() if city else None
        bump_version(wh)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="warehouse.update", entity_type="Warehouse", entity_id=wh.WarehouseID,
            before={"name": before["name"], "city": before["city"]}, after={"name": wh.Name, "city": wh.City},
        )
    db.refresh(wh)
    return wh
