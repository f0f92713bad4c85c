from sqlalchemy import Column, String, DateTime, JSON, Index, event
from ..core.db import Base, new_id
from ..core.clock import utcnow


class AuditImmutableError(RuntimeError):
    pass


class AuditEvent(Base):
    __tablename__ = "AuditEvent"

    AuditEventID = Column(String(36), primary_key=True, default=new_id)
    TenantID     = Column(String(36), nullable=False)
    ActorUserID  = Column(String(36))
    Action       = Column(String(120), nullable=False)
    EntityType   = Column(String(80), nullable=False)
    EntityID     = Column(String(80))
    Before       = Column(JSON)
    After        = Column(JSON)
    Metadata_    = Column("Metadata", JSON)
    CreatedAt    = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("IX_AuditEvent_Tenant_CreatedAt", "TenantID", "CreatedAt"),
        Index("IX_AuditEvent_Tenant_Entity", "TenantID", "EntityType", "EntityID"),
    )


# Append-only at the ORM level (PostgreSQL also gets a trigger in the migration)
@event.listens_for(AuditEvent, "before_update")
def _block_audit_update(mapper, connection, target):
    raise AuditImmutableError("AuditEvent is append-only")


@event.listens_for(AuditEvent, "before_delete")
def _block_audit_delete(mapper, connection, target):
    raise AuditImmutableError("AuditEvent is append-only")
