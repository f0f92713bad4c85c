# backend/pharmaflow/routers/products.py
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_module, require_permission
from ..domain.constants import CATALOG_READ, CATALOG_WRITE, MODULE_WAREHOUSE
from ..schemas.catalog import BatchCreate, BatchStatusUpdate, ProductCreate, ProductUpdate
from ..services import product_service

router = APIRouter(
    prefix="/api/v1/products",
    tags=["products"],
    dependencies=[Depends(require_module(MODULE_WAREHOUSE))],
)

Reader = require_permission(CATALOG_READ)
Writer = require_permission(CATALOG_WRITE)


@router.get("")
def list_products(
    take: int = Query(20, ge=1, le=50),
    cursor: Optional[str] = None,
    q: Optional[str] = Query(None, max_length=200),
    isActive: Optional[bool] = None,
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows, next_cursor = product_service.list_products(
        db, tenant_id=ctx.tenant_id, q=q, is_active=isActive, cursor=cursor, take=take
    )
    items = [product_service.serialize_product(p) for p in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_product(payload: ProductCreate, ctx: AuthContext = Depends(Writer), db: Session = Depends(get_db)):
    p = product_service.create_product(db, actor=ctx, payload=payload)
    return ok(product_service.serialize_product(p), status_code=status.HTTP_201_CREATED)


@router.get("/{product_id}")
def get_product(product_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    p = product_service.get_product(db, tenant_id=ctx.tenant_id, product_id=product_id)
    return ok(product_service.serialize_product(p))


@router.patch("/{product_id}")
def update_product(
    payload: ProductUpdate,
    product_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"version"})
    p = product_service.update_product(db, actor=ctx, product_id=product_id, version=payload.version, changes=changes)
    return ok(product_service.serialize_product(p))


# ---- Batches ----
@router.get("/{product_id}/batches")
def list_batches(product_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    items = product_service.list_batches(db, actor=ctx, product_id=product_id)
    return ok(items, meta=list_meta(items))


@router.post("/{product_id}/batches", status_code=status.HTTP_201_CREATED)
def create_batch(
    payload: BatchCreate,
    product_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    result = product_service.create_batch(db, actor=ctx, product_id=product_id, payload=payload)
    return ok(result, status_code=status.HTTP_201_CREATED)


@router.patch("/{product_id}/batches/{batch_id}/status")
def update_batch_status(
    payload: BatchStatusUpdate,
    product_id: str = Path(...),
    batch_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    b = product_service.update_batch_status(
        db, actor=ctx, product_id=product_id, batch_id=batch_id, new_status=payload.status, version=payload.version
    )
    return ok(product_service.serialize_batch(b))


@router.get("/{product_id}/batches/{batch_id}/movements")
def batch_movements(
    product_id: str = Path(...),
    batch_id: str = Path(...),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    items = product_service.batch_movements(db, tenant_id=ctx.tenant_id, product_id=product_id, batch_id=batch_id)
    return ok(items, meta=list_meta(items))
