from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..domain.constants import SEQ_LOT, SEQUENCE_KEYS
from ..models import TenantSequence


def format_sequence(key: str, year: int, n: int) -> str:
    if key == SEQ_LOT:
        return f"LOT-{year}{n:03d}"
    return f"{key}{year}-{n}"


def next_sequence(db: Session, tenant_id: str, key: str, year: Optional[int] = None) -> dict:
    """
    Atomically increments the (tenant, year, key) counter inside the caller's
    transaction. Returns {"year", "number", "value"}.
    """
    if key not in SEQUENCE_KEYS:
        raise ValueError(f"unknown sequence key: {key}")
    y = int(year or utcnow().year)

    row = (
        db.query(TenantSequence)
        .filter(TenantSequence.TenantID == tenant_id, TenantSequence.Year == y, TenantSequence.Key == key)
        .with_for_update()
        .one_or_none()
    )
    if row is None:
        # Savepoint: a concurrent creator wins and we lock its row instead
        try:
            with db.begin_nested():
                row = TenantSequence(TenantID=tenant_id, Year=y, Key=key, CurrentValue=0)
                db.add(row)
        except IntegrityError:
            row = (
                db.query(TenantSequence)
                .filter(TenantSequence.TenantID == tenant_id, TenantSequence.Year == y, TenantSequence.Key == key)
                .with_for_update()
                .one()
            )

    row.CurrentValue = int(row.CurrentValue or 0) + 1
    db.flush()
    value = int(row.CurrentValue)
    return {"year": y, "value": value, "number": format_sequence(key, y, value)}
