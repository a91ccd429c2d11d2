"""
Audit Log Database Models.

Append-only history of every workflow transition and comment. Entries are
written in the same transaction as the change they describe, so a rolled
back operation leaves no trace here.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
    event,
)

from ..review.errors import ImmutabilityError
from ..review.primitives import generate_ulid, isoformat, utc_now
from .base import Base

audit_actor_kind_enum = Enum(
    "human",
    "system",
    name="audit_actor_kind",
)


class AuditLogModel(Base):
    """Audit log entry for a workflow.

    The integer primary key gives a total order per database; ``event_id``
    is the globally unique handle exposed to clients.
    """

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), nullable=False, unique=True, default=generate_ulid)

    ts = Column(DateTime(timezone=True), nullable=False, default=utc_now, index=True)

    # Who performed the action
    actor_kind = Column(audit_actor_kind_enum, nullable=False)
    actor_id = Column(String(128), nullable=False, index=True)

    # What happened, e.g. "approver.approved", "level.activated"
    action = Column(String(64), nullable=False, index=True)

    # What entity was affected
    entity_kind = Column(String(50), nullable=False)
    entity_id = Column(String(128), nullable=False)

    workflow_id = Column(String(36), nullable=True, index=True)
    level_id = Column(String(36), nullable=True, index=True)

    before = Column(JSON, nullable=True)
    after = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_audit_log_entity", "entity_kind", "entity_id"),
        Index("ix_audit_log_workflow_id_seq", "workflow_id", "id"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert model to dictionary."""
        return {
            "id": self.id,
            "event_id": self.event_id,
            "ts": isoformat(self.ts),
            "actor_kind": self.actor_kind,
            "actor_id": self.actor_id,
            "action": self.action,
            "entity_kind": self.entity_kind,
            "entity_id": self.entity_id,
            "workflow_id": self.workflow_id,
            "level_id": self.level_id,
            "before": self.before,
            "after": self.after,
            "note": self.note,
        }


@event.listens_for(AuditLogModel, "before_update")
def _audit_entries_are_immutable(mapper, connection, target) -> None:
    raise ImmutabilityError("AuditLog", str(target.id))
