import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from ..core.api import num
from ..core.clock import iso
from ..domain.constants import REF_RETURN
from ..models import Location, StockReturn, StockReturnItem, Warehouse
from . import audit_service
from .common import branch_scope, to_qty, transaction
from .stock_service import create_stock_movement

logger = logging.getLogger(__name__)


def serialize_return(r: StockReturn) -> Dict[str, Any]:
    loc = r.to_location
    wh = loc.warehouse if loc else None
    return {
        "id": r.ReturnID,
        "reason": r.Reason,
        "sourceType": r.SourceType,
        "sourceId": r.SourceID,
        "note": r.Note,
        "createdAt": iso(r.CreatedAt),
        "toLocation": {"id": loc.LocationID, "code": loc.Code} if loc else None,
        "warehouse": {"id": wh.WarehouseID, "code": wh.Code, "name": wh.Name, "city": wh.City} if wh else None,
        "items": [
            {
                "id": it.ReturnItemID,
                "productId": it.ProductID,
                "productName": it.product.Name if it.product else None,
                "batchId": it.BatchID,
                "quantity": num(it.Quantity),
            }
            for it in r.items
        ],
    }


def create_return(db: Session, *, actor, payload) -> StockReturn:
    with transaction(db, "create_stock_return"):
        loc = (
            db.query(Location)
            .filter(
                Location.LocationID == payload.toLocationId,
                Location.TenantID == actor.tenant_id,
                Location.IsActive.is_(True),
            )
            .first()
        )
        if not loc:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Location not found")
        scoped = branch_scope(actor)
        if scoped:
            city = ((loc.warehouse.City if loc.warehouse else None) or "").strip().upper()
            if not city:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Destination warehouse has no city")
            if city != scoped:
                raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")

        ret = StockReturn(
            TenantID=actor.tenant_id,
            ToLocationID=loc.LocationID,
            SourceType=payload.sourceType,
            SourceID=payload.sourceId,
            Reason=payload.reason.strip(),
            Note=payload.note,
            CreatedBy=actor.user_id,
        )
        db.add(ret)
        db.flush()
        for it in payload.items:
            db.add(StockReturnItem(
                TenantID=actor.tenant_id,
                ReturnID=ret.ReturnID,
                ProductID=it.productId,
                BatchID=it.batchId,
                Quantity=to_qty(it.quantity),
            ))
            create_stock_movement(
                db,
                tenant_id=actor.tenant_id,
                user_id=actor.user_id,
                type="IN",
                product_id=it.productId,
                quantity=it.quantity,
                batch_id=it.batchId,
                to_location_id=loc.LocationID,
                reference_type=REF_RETURN,
                reference_id=ret.ReturnID,
                note=it.note or payload.note or payload.reason,
            )
        audit_service.append(
            db, tenant_id=actor.tenant_id, actor_user_id=actor.user_id,
            action="stock.return.create", entity_type="StockReturn", entity_id=ret.ReturnID,
            after={
                "toLocationId": loc.LocationID,
                "reason": ret.Reason,
                "items": [{"productId": i.productId, "batchId": i.batchId, "quantity": i.quantity} for i in payload.items],
            },
        )
    db.refresh(ret)
    return ret


def list_returns(
    db: Session,
    *,
    actor,
    warehouse_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    take: int = 50,
) -> List[StockReturn]:
    q = (
        db.query(StockReturn)
        .join(Location, Location.LocationID == StockReturn.ToLocationID)
        .options(
            selectinload(StockReturn.items).selectinload(StockReturnItem.product),
            selectinload(StockReturn.to_location).selectinload(Location.warehouse),
        )
        .filter(StockReturn.TenantID == actor.tenant_id)
    )
    scoped = branch_scope(actor)
    if scoped:
        q = q.join(Warehouse, Warehouse.WarehouseID == Location.WarehouseID).filter(func.upper(Warehouse.City) == scoped)
    if warehouse_id:
        q = q.filter(Location.WarehouseID == warehouse_id)
    if date_from:
        q = q.filter(StockReturn.CreatedAt >= date_from)
    if date_to:
        q = q.filter(StockReturn.CreatedAt < date_to)
    return q.order_by(StockReturn.CreatedAt.desc(), StockReturn.ReturnID.desc()).limit(take).all()
