"""Catalog search, products and batches (with optional initial stock)."""
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from ..core.api import num
from ..core.clock import iso
from ..domain.constants import REF_BATCH, SEQ_LOT, STOCK_READ
from ..models import Batch, InventoryBalance, Location, Product, StockMovement
from . import audit_service
from .common import (
    bump_version, check_version, contains_ci, get_scoped, keyset_page, lock_scoped, to_money, transaction,
)
from .sequence_service import next_sequence
from .stock_service import create_stock_movement, serialize_movement

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
PRODUCT_FIELDS = {
    "sku": "Sku",
    "name": "Name",
    "genericName": "GenericName",
    "description": "Description",
    "cost": "Cost",
    "price": "Price",
    "isActive": "IsActive",
}


def serialize_product(p: Product) -> Dict[str, Any]:
    return {
        "id": p.ProductID,
        "sku": p.Sku,
        "name": p.Name,
        "genericName": p.GenericName,
        "description": p.Description,
        "cost": num(p.Cost),
        "price": num(p.Price),
        "isActive": bool(p.IsActive),
        "version": p.Version,
        "createdAt": iso(p.CreatedAt),
        "updatedAt": iso(p.UpdatedAt),
    }


def serialize_batch(b: Batch, totals: Optional[Dict[str, Decimal]] = None) -> Dict[str, Any]:
    out = {
        "id": b.BatchID,
        "productId": b.ProductID,
        "batchNumber": b.BatchNumber,
        "manufacturingDate": iso(b.ManufacturingDate),
        "expiresAt": iso(b.ExpiresAt),
        "status": b.Status,
        "version": b.Version,
        "createdAt": iso(b.CreatedAt),
    }
    if totals is not None:
        qty = totals.get("quantity", ZERO)
        reserved = totals.get("reserved", ZERO)
        out.update({
            "quantity": num(qty),
            "reservedQuantity": num(reserved),
            "availableQuantity": num(max(ZERO, qty - reserved)),
        })
    return out


# ---- Catalog ----
def search_catalog(db: Session, *, tenant_id: str, q: Optional[str], take: int) -> List[Product]:
    query = db.query(Product).filter(Product.TenantID == tenant_id, Product.IsActive.is_(True))
    if q and q.strip():
        term = q.strip()
        query = query.filter(or_(
            contains_ci(Product.Sku, term),
            contains_ci(Product.Name, term),
            contains_ci(Product.GenericName, term),
        ))
    return query.order_by(Product.Name.asc()).limit(take).all()


def sku_exists(db: Session, *, tenant_id: str, sku: str, exclude_id: Optional[str] = None) -> bool:
    q = db.query(Product.ProductID).filter(
        Product.TenantID == tenant_id, func.lower(Product.Sku) == sku.strip().lower()
    )
    if exclude_id:
        q = q.filter(Product.ProductID != exclude_id)
    return q.first() is not None


# ---- Products ----
def list_products(
    db: Session, *, tenant_id: str, q: Optional[str], is_active: Optional[bool], cursor: Optional[str], take: int
):
    query = db.query(Product).filter(Product.TenantID == tenant_id)
    if q and q.strip():
        term = q.strip()
        query = query.filter(or_(
            contains_ci(Product.Sku, term),
            contains_ci(Product.Name, term),
            contains_ci(Product.GenericName, term),
        ))
    if is_active is not None:
        query = query.filter(Product.IsActive.is_(is_active))
    return keyset_page(db, query, Product, Product.CreatedAt, Product.ProductID, cursor=cursor, take=take)


def get_product(db: Session, *, tenant_id: str, product_id: str) -> Product:
    return get_scoped(db, Product, product_id, tenant_id, "Product not found")


def create_product(db: Session, *, actor, payload) -> Product:
    if sku_exists(db, tenant_id=actor.tenant_id, sku=payload.sku):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="SKU already exists")
    with transaction(db, "create_product", conflict_detail="SKU already exists"):
        p = Product(
            TenantID=actor.tenant_id,
            Sku=payload.sku.strip(),
            Name=payload.name.strip(),
            GenericName=payload.genericName,
            Description=payload.description,
            Cost=to_money(payload.cost) if payload.cost is not None else None,
            Price=to_money(payload.price) if payload.price is not None else None,
            CreatedBy=actor.user_id,
        )
        db.add(p)
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="product.create", entity_type="Product", entity_id=p.ProductID,
            after=serialize_product(p),
        )
    db.refresh(p)
    return p


def update_product(db: Session, *, actor, product_id: str, version: int, changes: Dict[str, Any]) -> Product:
    if not changes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No fields to update")
    if "sku" in changes and sku_exists(db, tenant_id=actor.tenant_id, sku=changes["sku"], exclude_id=product_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="SKU already exists")
    with transaction(db, "update_product", conflict_detail="SKU already exists"):
        p = lock_scoped(db, Product, Product.ProductID, product_id, actor.tenant_id, "Product not found")
        check_version(p, version)
        before = serialize_product(p)
        for key, value in changes.items():
            if key in ("cost", "price") and value is not None:
                value = to_money(value)
            setattr(p, PRODUCT_FIELDS[key], value)
        bump_version(p)
        db.flush()
        after = serialize_product(p)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="product.update", entity_type="Product", entity_id=p.ProductID,
            before={k: before[k] for k in changes}, after={k: after[k] for k in changes},
        )
    db.refresh(p)
    return p


# ---- Batches ----
def list_batches(db: Session, *, actor, product_id: str) -> List[Dict[str, Any]]:
    get_scoped(db, Product, product_id, actor.tenant_id, "Product not found")
    batches = (
        db.query(Batch)
        .filter(Batch.TenantID == actor.tenant_id, Batch.ProductID == product_id)
        .order_by(Batch.ExpiresAt.is_(None), Batch.ExpiresAt.asc(), Batch.CreatedAt.desc())
        .all()
    )
    if not actor.has(STOCK_READ):
        return [serialize_batch(b) for b in batches]

    sums = (
        db.query(
            InventoryBalance.BatchID,
            func.coalesce(func.sum(InventoryBalance.Quantity), 0),
            func.coalesce(func.sum(InventoryBalance.ReservedQuantity), 0),
        )
        .filter(InventoryBalance.TenantID == actor.tenant_id, InventoryBalance.ProductID == product_id)
        .group_by(InventoryBalance.BatchID)
        .all()
    )
    totals = {bid: {"quantity": Decimal(str(q)), "reserved": Decimal(str(r))} for bid, q, r in sums if bid}
    return [serialize_batch(b, totals.get(b.BatchID, {})) for b in batches]


def _initial_stock_location(db: Session, tenant_id: str, initial) -> str:
    if initial.toLocationId:
        return initial.toLocationId
    loc = (
        db.query(Location)
        .filter(
            Location.TenantID == tenant_id,
            Location.WarehouseID == initial.warehouseId,
            Location.IsActive.is_(True),
        )
        .order_by(Location.Code.asc())
        .first()
    )
    if not loc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Warehouse has no active location")
    return loc.LocationID


def create_batch(db: Session, *, actor, product_id: str, payload) -> Dict[str, Any]:
    movement = None
    with transaction(db, "create_batch", conflict_detail="Batch number already exists"):
        product = get_scoped(db, Product, product_id, actor.tenant_id, "Product not found")
        number = (payload.batchNumber or "").strip()
        if not number:
            number = next_sequence(db, actor.tenant_id, SEQ_LOT)["number"]
        dup = (
            db.query(Batch.BatchID)
            .filter(Batch.TenantID == actor.tenant_id, Batch.ProductID == product.ProductID, Batch.BatchNumber == number)
            .first()
        )
        if dup:
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Batch number already exists")
        batch = Batch(
            TenantID=actor.tenant_id,
            ProductID=product.ProductID,
            BatchNumber=number,
            ManufacturingDate=payload.manufacturingDate,
            ExpiresAt=payload.expiresAt,
            Status=payload.status,
            CreatedBy=actor.user_id,
        )
        db.add(batch)
        db.flush()

        initial = payload.initialStock
        if initial is not None:
            location_id = _initial_stock_location(db, actor.tenant_id, initial)
            movement = create_stock_movement(
                db,
                tenant_id=actor.tenant_id,
                user_id=actor.user_id,
                type="IN",
                product_id=product.ProductID,
                quantity=initial.quantity,
                batch_id=batch.BatchID,
                to_location_id=location_id,
                reference_type=REF_BATCH,
                reference_id=batch.BatchID,
                note="Initial stock",
            )
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="batch.create", entity_type="Batch", entity_id=batch.BatchID,
            after={
                "productId": product.ProductID,
                "batchNumber": number,
                "expiresAt": iso(batch.ExpiresAt),
                "status": batch.Status,
                "initialStock": num(initial.quantity) if initial is not None else None,
            },
        )
    db.refresh(batch)
    out = {"batch": serialize_batch(batch)}
    if movement is not None:
        out.update(movement.as_dict())
    return out


def update_batch_status(db: Session, *, actor, product_id: str, batch_id: str, new_status: str, version: int) -> Batch:
    with transaction(db, "update_batch_status"):
        batch = lock_scoped(db, Batch, Batch.BatchID, batch_id, actor.tenant_id, "Batch not found")
        if batch.ProductID != product_id:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
        check_version(batch, version)
        before = batch.Status
        batch.Status = new_status
        bump_version(batch)
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="batch.status.update", entity_type="Batch", entity_id=batch.BatchID,
            before={"status": before}, after={"status": new_status},
        )
    db.refresh(batch)
    return batch


def batch_movements(db: Session, *, tenant_id: str, product_id: str, batch_id: str, take: int = 50) -> List[Dict[str, Any]]:
    batch = get_scoped(db, Batch, batch_id, tenant_id, "Batch not found")
    if batch.ProductID != product_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Batch not found")
    rows = (
        db.query(StockMovement)
        .filter(StockMovement.TenantID == tenant_id, StockMovement.BatchID == batch_id)
        .order_by(StockMovement.CreatedAt.desc(), StockMovement.MovementID.desc())
        .limit(take)
        .all()
    )
    out = []
    for m in rows:
        item = serialize_movement(m)
        item["fromLocationCode"] = m.from_location.Code if m.from_location else None
        item["toLocationCode"] = m.to_location.Code if m.to_location else None
        out.append(item)
    return out
