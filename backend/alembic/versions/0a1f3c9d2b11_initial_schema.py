"""Initial schema + append-only AuditEvent

Revision ID: 0a1f3c9d2b11
Revises:
Create Date: 2026-09-14 10:12:03.418220

"""
from typing import Sequence, Union

from alembic import op

from pharmaflow.core.db import Base
from pharmaflow import models  # noqa: F401


# revision identifiers, used by Alembic.
revision: str = '0a1f3c9d2b11'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


AUDIT_FUNCTION = """
CREATE OR REPLACE FUNCTION audit_event_immutable() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'AuditEvent is append-only';
END;
$$ LANGUAGE plpgsql;
"""

AUDIT_TRIGGER = """
CREATE TRIGGER trg_audit_event_immutable
BEFORE UPDATE OR DELETE ON "AuditEvent"
FOR EACH ROW EXECUTE FUNCTION audit_event_immutable();
"""


def upgrade() -> None:
    """All tables from the model metadata; PostgreSQL also blocks UPDATE/DELETE on AuditEvent."""
    bind = op.get_bind()
    Base.metadata.create_all(bind=bind)

    if bind.dialect.name == "postgresql":
        op.execute(AUDIT_FUNCTION)
        op.execute('DROP TRIGGER IF EXISTS trg_audit_event_immutable ON "AuditEvent";')
        op.execute(AUDIT_TRIGGER)


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        op.execute('DROP TRIGGER IF EXISTS trg_audit_event_immutable ON "AuditEvent";')
        op.execute("DROP FUNCTION IF EXISTS audit_event_immutable();")
    Base.metadata.drop_all(bind=bind)
