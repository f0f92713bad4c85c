# backend/pharmaflow/routers/audit.py
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from ..core.api import list_meta, ok
from ..core.db import get_db
from ..core.security import AuthContext, require_permission
from ..domain.constants import AUDIT_READ
from ..services import audit_service

router = APIRouter(prefix="/api/v1/audit", tags=["audit"])

Reader = require_permission(AUDIT_READ)


@router.get("/events")
def list_events(
    take: int = Query(50, ge=1, le=100),
    cursor: Optional[str] = None,
    date_from: Optional[datetime] = Query(None, alias="from"),
    date_to: Optional[datetime] = Query(None, alias="to"),
    actorUserId: Optional[str] = None,
    action: Optional[str] = Query(None, max_length=200),
    entityType: Optional[str] = Query(None, max_length=100),
    entityId: Optional[str] = Query(None, max_length=100),
    includePayload: bool = False,
    ctx: AuthContext = Depends(Reader),
    db: Session = Depends(get_db),
):
    rows, next_cursor = audit_service.list_events(
        db,
        tenant_id=ctx.tenant_id,
        take=take,
        cursor=cursor,
        date_from=date_from,
        date_to=date_to,
        actor_user_id=actorUserId,
        action=action,
        entity_type=entityType,
        entity_id=entityId,
    )
    items = [audit_service.serialize_event(ev, include_payload=includePayload) for ev in rows]
    return ok({"items": items, "nextCursor": next_cursor}, meta=list_meta(items, next_cursor=next_cursor))


@router.get("/events/{event_id}")
def get_event(event_id: str = Path(...), ctx: AuthContext = Depends(Reader), db: Session = Depends(get_db)):
    ev = audit_service.get_event(db, tenant_id=ctx.tenant_id, event_id=event_id)
    return ok(audit_service.serialize_event(ev))
