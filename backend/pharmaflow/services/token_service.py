from datetime import timedelta
import hashlib
import hmac
import secrets
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import get_settings
from ..models import RefreshToken


def hash_token(raw: str) -> str:
    """Keyed SHA-256; only the digest is stored."""
    key = get_settings().JWT_REFRESH_SECRET.encode("utf-8")
    return hmac.new(key, raw.encode("utf-8"), hashlib.sha256).hexdigest()


def new_refresh_token() -> str:
    return secrets.token_hex(32)


def issue_refresh_token(db: Session, *, tenant_id: str, user_id: str) -> Tuple[str, RefreshToken]:
    raw = new_refresh_token()
    row = RefreshToken(
        TenantID=tenant_id,
        UserID=user_id,
        TokenHash=hash_token(raw),
        ExpiresAt=utcnow() + timedelta(days=get_settings().REFRESH_TOKEN_EXPIRE_DAYS),
    )
    db.add(row)
    db.flush()
    return raw, row


def find_usable(db: Session, raw: str) -> Optional[RefreshToken]:
    row = (
        db.query(RefreshToken)
        .filter(RefreshToken.TokenHash == hash_token(raw))
        .with_for_update()
        .one_or_none()
    )
    if row is None or row.RevokedAt is not None or row.ExpiresAt <= utcnow():
        return None
    return row


def revoke(db: Session, raw: str) -> bool:
    row = db.query(RefreshToken).filter(RefreshToken.TokenHash == hash_token(raw)).one_or_none()
    if row is None or row.RevokedAt is not None:
        return False
    row.RevokedAt = utcnow()
    db.flush()
    return True


def revoke_all_for_user(db: Session, user_id: str) -> int:
    n = (
        db.query(RefreshToken)
        .filter(RefreshToken.UserID == user_id, RefreshToken.RevokedAt.is_(None))
        .update({RefreshToken.RevokedAt: utcnow()}, synchronize_session=False)
    )
    db.flush()
    return int(n or 0)
