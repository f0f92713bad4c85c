from contextlib import contextmanager
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import List, Optional, Tuple
import logging

from fastapi import HTTPException, status
from sqlalchemy import and_, or_
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.orm import Query, Session

from ..domain.constants import BRANCH_CITY_MISSING, MSG_SELECT_BRANCH

logger = logging.getLogger(__name__)

MONEY_PLACES = Decimal("0.01")
QTY_PLACES = Decimal("0.001")


def to_money(val) -> Decimal:
    try:
        d = val if isinstance(val, Decimal) else Decimal(str(val))
        return d.quantize(MONEY_PLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid decimal amount")


def to_qty(val) -> Decimal:
    try:
        d = val if isinstance(val, Decimal) else Decimal(str(val))
        return d.quantize(QTY_PLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, TypeError, ValueError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid quantity")


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    # psycopg2 unique_violation
    if getattr(orig, "pgcode", None) == "23505":
        return True
    msg = str(orig or exc).lower()
    return "unique constraint" in msg or "duplicate key" in msg


@contextmanager
def transaction(db: Session, op: str, conflict_detail: str = "Conflict"):
    """Commit on success; rollback and map errors the same way everywhere."""
    try:
        yield
        db.commit()
    except HTTPException:
        db.rollback()
        raise
    except IntegrityError as e:
        db.rollback()
        logger.warning("%s integrity error: %s", op, getattr(e, "orig", e))
        if is_unique_violation(e):
            raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=conflict_detail)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"db_error: {getattr(e, 'orig', e)}")
    except DBAPIError as e:
        db.rollback()
        msg = str(getattr(e, "orig", e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"db_error: {msg}")
    except Exception as e:
        db.rollback()
        logger.exception("%s error", op)
        raise HTTPException(status_code=500, detail=f"{op} error: {type(e).__name__}: {e}")


def get_scoped(db: Session, model, pk, tenant_id: str, detail: str = "Not found"):
    row = db.get(model, pk)
    if row is None or getattr(row, "TenantID", None) != tenant_id:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return row


def lock_scoped(db: Session, model, pk_col, pk, tenant_id: str, detail: str = "Not found"):
    """SELECT ... FOR UPDATE on one tenant row (no-op lock on SQLite)."""
    row = (
        db.query(model)
        .filter(pk_col == pk, model.TenantID == tenant_id)
        .with_for_update()
        .one_or_none()
    )
    if row is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=detail)
    return row


def check_version(row, version: int) -> None:
    if int(row.Version) != int(version):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Version conflict")


def bump_version(row) -> None:
    row.Version = int(row.Version or 0) + 1


def keyset_page(
    db: Session,
    q: Query,
    model,
    sort_col,
    id_col,
    *,
    cursor: Optional[str],
    take: int,
    descending: bool = True,
) -> Tuple[List, Optional[str]]:
    """Keyset pagination over (sort_col, id_col); cursor is the id of the last row seen."""
    if cursor:
        anchor = db.get(model, cursor)
        if anchor is not None:
            sort_val = getattr(anchor, sort_col.key)
            if descending:
                q = q.filter(or_(sort_col < sort_val, and_(sort_col == sort_val, id_col < cursor)))
            else:
                q = q.filter(or_(sort_col > sort_val, and_(sort_col == sort_val, id_col > cursor)))
    if descending:
        q = q.order_by(sort_col.desc(), id_col.desc())
    else:
        q = q.order_by(sort_col.asc(), id_col.asc())
    rows = q.limit(take + 1).all()
    next_cursor = None
    if len(rows) > take:
        rows = rows[:take]
        next_cursor = getattr(rows[-1], id_col.key)
    return rows, next_cursor


def like_escape(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def contains_ci(col, term: str):
    return col.ilike(f"%{like_escape(term)}%", escape="\\")


def branch_scope(actor) -> Optional[str]:
    """City a branch-scoped caller is limited to; None when unscoped."""
    city = getattr(actor, "branch_city", None)
    if city == BRANCH_CITY_MISSING:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=MSG_SELECT_BRANCH)
    return city
