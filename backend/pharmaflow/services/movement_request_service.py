"""Branch movement requests: a branch asks for products, logistics transfers them in."""
import logging
import uuid
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import case, func
from sqlalchemy.orm import Session, selectinload

from ..core.api import num
from ..core.clock import iso, utcnow
from ..core.errors import StockError
from ..domain.constants import BRANCH_CITY_MISSING, MSG_SELECT_BRANCH, REF_REQUEST_BULK_FULFILL
from ..models import Location, Product, StockMovementRequest, StockMovementRequestItem, Warehouse
from . import audit_service
from .common import branch_scope, to_qty, transaction
from .stock_service import (
    allocate_to_request_items, close_fulfilled_requests, create_stock_movement, record_expiry_block,
)

logger = logging.getLogger(__name__)


def serialize_request(r: StockMovementRequest) -> Dict[str, Any]:
    return {
        "id": r.RequestID,
        "status": r.Status,
        "confirmationStatus": r.ConfirmationStatus,
        "requestedCity": r.RequestedCity,
        "requestedBy": r.RequestedBy,
        "quoteId": r.QuoteID,
        "note": r.Note,
        "createdAt": iso(r.CreatedAt),
        "fulfilledAt": iso(r.FulfilledAt),
        "fulfilledBy": r.FulfilledBy,
        "confirmedAt": iso(r.ConfirmedAt),
        "confirmedBy": r.ConfirmedBy,
        "confirmationNote": r.ConfirmationNote,
        "items": [
            {
                "id": it.RequestItemID,
                "productId": it.ProductID,
                "productSku": it.product.Sku if it.product else None,
                "productName": it.product.Name if it.product else None,
                "requestedQuantity": num(it.RequestedQuantity),
                "remainingQuantity": num(it.RemainingQuantity),
            }
            for it in r.items
        ],
    }


def _active_warehouse(db: Session, tenant_id: str, warehouse_id: str) -> Warehouse:
    wh = (
        db.query(Warehouse)
        .filter(Warehouse.WarehouseID == warehouse_id, Warehouse.TenantID == tenant_id, Warehouse.IsActive.is_(True))
        .first()
    )
    if not wh:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Warehouse not found")
    return wh


def create_request(db: Session, *, actor, payload) -> StockMovementRequest:
    wh = _active_warehouse(db, actor.tenant_id, payload.warehouseId)
    city = (wh.City or "").strip().upper()
    if not city:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Warehouse has no city")
    scoped = branch_scope(actor)
    if scoped and scoped != city:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Solo puede solicitar movimientos para su sucursal"
        )

    product_ids = {it.productId for it in payload.items}
    found = (
        db.query(func.count(Product.ProductID))
        .filter(Product.TenantID == actor.tenant_id, Product.ProductID.in_(product_ids))
        .scalar()
    )
    if int(found or 0) != len(product_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Product not found")

    with transaction(db, "create_movement_request"):
        req = StockMovementRequest(
            TenantID=actor.tenant_id,
            RequestedCity=city,
            RequestedBy=payload.requestedByName.strip(),
            QuoteID=payload.quoteId,
            Note=payload.note,
            CreatedBy=actor.user_id,
        )
        db.add(req)
        db.flush()
        for it in payload.items:
            qty = to_qty(it.quantity)
            db.add(StockMovementRequestItem(
                TenantID=actor.tenant_id,
                RequestID=req.RequestID,
                ProductID=it.productId,
                RequestedQuantity=qty,
                RemainingQuantity=qty,
            ))
        db.flush()
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="stock.movement-request.create", entity_type="StockMovementRequest", entity_id=req.RequestID,
            after={"requestedCity": city, "items": [{"productId": i.productId, "quantity": i.quantity} for i in payload.items]},
        )
    db.refresh(req)
    return req


def list_requests(
    db: Session, *, actor, status_filter: Optional[str] = None, city: Optional[str] = None, take: int = 50
) -> List[StockMovementRequest]:
    q = (
        db.query(StockMovementRequest)
        .options(selectinload(StockMovementRequest.items).selectinload(StockMovementRequestItem.product))
        .filter(StockMovementRequest.TenantID == actor.tenant_id)
    )
    scoped = branch_scope(actor)
    if scoped:
        q = q.filter(func.upper(StockMovementRequest.RequestedCity) == scoped)
    elif city:
        q = q.filter(func.upper(StockMovementRequest.RequestedCity) == city.strip().upper())
    if status_filter:
        q = q.filter(StockMovementRequest.Status == status_filter)
    # OPEN first, then the rest
    status_rank = case((StockMovementRequest.Status == "OPEN", 0), else_=1)
    return q.order_by(status_rank, StockMovementRequest.CreatedAt.desc()).limit(take).all()


def _get_request(db: Session, tenant_id: str, request_id: str) -> StockMovementRequest:
    req = (
        db.query(StockMovementRequest)
        .filter(StockMovementRequest.RequestID == request_id, StockMovementRequest.TenantID == tenant_id)
        .with_for_update()
        .first()
    )
    if not req:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Movement request not found")
    return req


def bulk_fulfill(db: Session, *, actor, payload) -> Dict[str, Any]:
    reference_id = str(uuid.uuid4())
    created: List[Dict[str, Any]] = []
    try:
        with transaction(db, "bulk_fulfill_requests"):
            to_loc = (
                db.query(Location)
                .filter(Location.LocationID == payload.toLocationId, Location.TenantID == actor.tenant_id)
                .first()
            )
            if not to_loc:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")
            city = ((to_loc.warehouse.City if to_loc.warehouse else None) or "").strip().upper()
            if not city:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Destination warehouse has no city")
            if actor.branch_city == BRANCH_CITY_MISSING:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=MSG_SELECT_BRANCH)
            if actor.branch_city and actor.branch_city != city:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

            ids = list(dict.fromkeys(payload.requestIds))
            requests = (
                db.query(StockMovementRequest)
                .filter(StockMovementRequest.TenantID == actor.tenant_id, StockMovementRequest.RequestID.in_(ids))
                .with_for_update()
                .all()
            )
            if len(requests) != len(ids):
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Movement request not found")
            for r in requests:
                if r.Status != "OPEN":
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Request is not open")
                if (r.RequestedCity or "").strip().upper() != city:
                    raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Request city does not match destination")
            order = {rid: i for i, rid in enumerate(ids)}

            for line in payload.lines:
                result = create_stock_movement(
                    db,
                    tenant_id=actor.tenant_id,
                    user_id=actor.user_id,
                    type="TRANSFER",
                    product_id=line.productId,
                    quantity=line.quantity,
                    batch_id=line.batchId,
                    from_location_id=payload.fromLocationId,
                    to_location_id=payload.toLocationId,
                    reference_type=REF_REQUEST_BULK_FULFILL,
                    reference_id=reference_id,
                    note=payload.note,
                )
                created.append(result.as_dict()["createdMovement"])
                items = (
                    db.query(StockMovementRequestItem)
                    .filter(
                        StockMovementRequestItem.TenantID == actor.tenant_id,
                        StockMovementRequestItem.RequestID.in_(ids),
                        StockMovementRequestItem.ProductID == line.productId,
                    )
                    .with_for_update()
                    .all()
                )
                items.sort(key=lambda it: (order[it.RequestID], it.CreatedAt))
                allocate_to_request_items(db, items, result.movement.Quantity)

            fulfilled = close_fulfilled_requests(db, actor.tenant_id, ids, actor.user_id)
            audit_service.append(
                db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
                action="stock.movement-request.bulk-fulfill", entity_type="StockMovementRequest", entity_id=reference_id,
                metadata={
                    "requestIds": ids, "fulfilledRequestIds": fulfilled,
                    "movements": len(created), "destinationCity": city,
                },
            )
    except StockError as e:
        if e.code == "BATCH_EXPIRED":
            record_expiry_block(db, actor=actor, err=e, operation="stock.movement-request.bulk-fulfill")
        raise
    return {
        "referenceType": REF_REQUEST_BULK_FULFILL,
        "referenceId": reference_id,
        "createdMovements": created,
        "fulfilledRequestIds": fulfilled,
        "destinationCity": city,
    }


def confirm_request(db: Session, *, actor, request_id: str, action: str, note: Optional[str]) -> StockMovementRequest:
    scoped = branch_scope(actor)
    with transaction(db, "confirm_movement_request"):
        req = _get_request(db, actor.tenant_id, request_id)
        if not scoped or (req.RequestedCity or "").strip().upper() != scoped:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail="Solo puede confirmar solicitudes de su sucursal"
            )
        if req.Status != "FULFILLED":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="La solicitud todavía no fue atendida")
        if req.ConfirmationStatus != "PENDING":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="La solicitud ya fue confirmada")
        req.ConfirmationStatus = "ACCEPTED" if action == "ACCEPT" else "REJECTED"
        req.ConfirmedAt = utcnow()
        req.ConfirmedBy = actor.user_id
        req.ConfirmationNote = note
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="stock.movement-request.confirm", entity_type="StockMovementRequest", entity_id=req.RequestID,
            after={"confirmationStatus": req.ConfirmationStatus, "note": note},
        )
    db.refresh(req)
    return req


def cancel_request(db: Session, *, actor, request_id: str) -> StockMovementRequest:
    scoped = branch_scope(actor)
    with transaction(db, "cancel_movement_request"):
        req = _get_request(db, actor.tenant_id, request_id)
        if scoped and (req.RequestedCity or "").strip().upper() != scoped:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
        if req.Status != "OPEN":
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Only OPEN requests can be cancelled")
        req.Status = "CANCELLED"
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="stock.movement-request.cancel", entity_type="StockMovementRequest", entity_id=req.RequestID,
            before={"status": "OPEN"}, after={"status": "CANCELLED"},
        )
    db.refresh(req)
    return req
