# backend/pharmaflow/routers/catalog.py
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_permission
from ..domain.constants import CATALOG_READ
from ..services import product_service

router = APIRouter(prefix="/api/v1/catalog", tags=["catalog"])


@router.get("/search")
def search(
    q: Optional[str] = Query(None, max_length=200),
    take: int = Query(20, ge=1, le=50),
    ctx: AuthContext = Depends(require_permission(CATALOG_READ)),
    db: Session = Depends(get_db),
):
    rows = product_service.search_catalog(db, tenant_id=ctx.tenant_id, q=q, take=take)
    items = [product_service.serialize_product(p) for p in rows]
    return ok(items, meta=list_meta(items))


@router.get("/products/check-sku")
def check_sku(
    sku: str = Query(..., min_length=1, max_length=64),
    excludeId: Optional[str] = None,
    ctx: AuthContext = Depends(require_permission(CATALOG_READ)),
    db: Session = Depends(get_db),
):
    exists = product_service.sku_exists(db, tenant_id=ctx.tenant_id, sku=sku, exclude_id=excludeId)
    return ok({"exists": exists})
