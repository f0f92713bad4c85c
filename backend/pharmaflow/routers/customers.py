# backend/pharmaflow/routers/customers.py
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, status
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_module, require_permission
from ..domain.constants import MODULE_SALES, SALES_ORDER_READ, SALES_ORDER_WRITE
from ..schemas.sales import CustomerCreate, CustomerUpdate
from ..services import customer_service

router = APIRouter(
    prefix="/api/v1/customers",
    tags=["customers"],
    dependencies=[Depends(require_module(MODULE_SALES))],
)

Reader = require_permission(SALES_ORDER_READ)
Writer = require_permission(SALES_ORDER_WRITE)


@router.get("/branch-cities")
def branch_cities(ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    items = customer_service.branch_cities(db, tenant_id=ctx.tenant_id)
    return ok(items, meta=list_meta(items))


@router.post("", status_code=status.HTTP_201_CREATED)
def create_customer(payload: CustomerCreate, ctx: AuthContext = Depends(Writer), db: Session = Depends(get_db)):
    c = customer_service.create_customer(db, actor=ctx, payload=payload)
    return ok(customer_service.serialize_customer(c), status_code=status.HTTP_201_CREATED)


@router.get("")
def list_customers(
    q: Optional[str] = Query(None, max_length=200),
    cities: Optional[str] = Query(None, max_length=1000),
    cursor: Optional[str] = None,
    take: int = Query(20, ge=1, le=50),
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows, next_cursor = customer_service.list_customers(db, actor=ctx, q=q, cities=cities, cursor=cursor, take=take)
    items = [customer_service.serialize_customer(c) for c in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.get("/{customer_id}")
def get_customer(customer_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    c = customer_service.get_customer(db, actor=ctx, customer_id=customer_id)
    return ok(customer_service.serialize_customer(c))


@router.patch("/{customer_id}")
def update_customer(
    payload: CustomerUpdate,
    customer_id: str = Path(...),
    ctx: AuthContext = Depends(Writer),
    db: Session = Depends(get_db),
):
    changes = payload.model_dump(exclude_unset=True, exclude={"version"})
    c = customer_service.update_customer(
        db, actor=ctx, customer_id=customer_id, version=payload.version, changes=changes
    )
    return ok(customer_service.serialize_customer(c))
