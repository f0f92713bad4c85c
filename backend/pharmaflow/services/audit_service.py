from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
import logging

from fastapi import HTTPException, status
from fastapi.encoders import jsonable_encoder
from sqlalchemy.orm import Session

from ..core.clock import as_naive_utc, iso
from ..models import AuditEvent
from .common import contains_ci, keyset_page

logger = logging.getLogger(__name__)


def append(
    db: Session,
    *,
    tenant_id: str,
    actor_user_id: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    before: Any = None,
    after: Any = None,
    metadata: Any = None,
) -> AuditEvent:
    """Adds one audit row to the caller's transaction (no commit)."""
    ev = AuditEvent(
        TenantID=tenant_id,
        ActorUserID=actor_user_id,
        Action=action,
        EntityType=entity_type,
        EntityID=str(entity_id) if entity_id is not None else None,
        Before=jsonable_encoder(before) if before is not None else None,
        After=jsonable_encoder(after) if after is not None else None,
        Metadata_=jsonable_encoder(metadata) if metadata is not None else None,
    )
    db.add(ev)
    db.flush()
    return ev


def append_committed(db: Session, **kwargs) -> None:
    """Standalone audit write, used after a business transaction was rolled back."""
    try:
        append(db, **kwargs)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("audit append failed (action=%s)", kwargs.get("action"))


def serialize_event(ev: AuditEvent, include_payload: bool = True) -> Dict[str, Any]:
    out = {
        "id": ev.AuditEventID,
        "createdAt": iso(ev.CreatedAt),
        "actorUserId": ev.ActorUserID,
        "action": ev.Action,
        "entityType": ev.EntityType,
        "entityId": ev.EntityID,
    }
    if include_payload:
        out.update({"before": ev.Before, "after": ev.After, "metadata": ev.Metadata_})
    return out


def list_events(
    db: Session,
    *,
    tenant_id: str,
    take: int = 50,
    cursor: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    actor_user_id: Optional[str] = None,
    action: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
) -> Tuple[List[AuditEvent], Optional[str]]:
    q = db.query(AuditEvent).filter(AuditEvent.TenantID == tenant_id)
    if date_from:
        q = q.filter(AuditEvent.CreatedAt >= as_naive_utc(date_from))
    if date_to:
        q = q.filter(AuditEvent.CreatedAt <= as_naive_utc(date_to))
    if actor_user_id:
        q = q.filter(AuditEvent.ActorUserID == actor_user_id)
    if action:
        q = q.filter(contains_ci(AuditEvent.Action, action))
    if entity_type:
        q = q.filter(AuditEvent.EntityType == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.EntityID == entity_id)
    return keyset_page(
        db, q, AuditEvent, AuditEvent.CreatedAt, AuditEvent.AuditEventID,
        cursor=cursor, take=min(max(1, take), 100),
    )


def get_event(db: Session, *, tenant_id: str, event_id: str) -> AuditEvent:
    ev = (
        db.query(AuditEvent)
        .filter(AuditEvent.TenantID == tenant_id, AuditEvent.AuditEventID == event_id)
        .first()
    )
    if not ev:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Not found")
    return ev
