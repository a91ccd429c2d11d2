"""
Audit Trail Service.

Records workflow transitions and comments. ``record`` only adds and flushes;
the caller owns the transaction so the entry commits or rolls back together
with the state change it describes.
"""

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..review.primitives import Actor, SYSTEM_ACTOR, utc_now
from .audit_models import AuditLogModel


class AuditTrail:
    """Service for managing audit log entries.

    Usage:
        audit = AuditTrail(db_session)
        audit.log_status_change("Workflow", wf.id, "draft", "in_review",
                                actor=actor, workflow_id=wf.id)
        db_session.commit()
    """

    def __init__(self, db: Session):
        self.db = db

    def record(
        self,
        action: str,
        entity_kind: str,
        entity_id: str,
        actor: Optional[Actor] = None,
        workflow_id: Optional[str] = None,
        level_id: Optional[str] = None,
        before: Optional[Dict[str, Any]] = None,
        after: Optional[Dict[str, Any]] = None,
        note: Optional[str] = None,
    ) -> AuditLogModel:
        """Append one entry to the trail.

        Args:
            action: Dotted action name, e.g. "workflow.created"
            entity_kind: Type of entity (e.g., "Workflow", "Level", "Approver")
            entity_id: ID of the entity
            actor: Who performed the action; defaults to the engine itself
            workflow_id: Workflow the entry belongs to
            level_id: Level the entry belongs to, if any
            before: State before the change
            after: State after the change
            note: Optional human-readable note

        Returns:
            The pending AuditLogModel (flushed, not committed)
        """
        actor = actor or SYSTEM_ACTOR
        entry = AuditLogModel(
            ts=utc_now(),
            actor_kind=actor.actor_kind.value,
            actor_id=actor.actor_id,
            action=action,
            entity_kind=entity_kind,
            entity_id=entity_id,
            workflow_id=workflow_id,
            level_id=level_id,
            before=before,
            after=after,
            note=note,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def log_create(
        self,
        entity_kind: str,
        entity_id: str,
        after: Dict[str, Any],
        actor: Optional[Actor] = None,
        workflow_id: Optional[str] = None,
        level_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AuditLogModel:
        """Log the creation of an entity."""
        return self.record(
            f"{entity_kind.lower()}.created",
            entity_kind,
            entity_id,
            actor=actor,
            workflow_id=workflow_id,
            level_id=level_id,
            after=after,
            note=note,
        )

    def log_status_change(
        self,
        entity_kind: str,
        entity_id: str,
        old_status: str,
        new_status: str,
        actor: Optional[Actor] = None,
        workflow_id: Optional[str] = None,
        level_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> AuditLogModel:
        """Log a status change, named after the entity and its new status."""
        return self.record(
            f"{entity_kind.lower()}.{new_status}",
            entity_kind,
            entity_id,
            actor=actor,
            workflow_id=workflow_id,
            level_id=level_id,
            before={"status": old_status},
            after={"status": new_status},
            note=note or f"Status changed: {old_status} -> {new_status}",
        )

    def query(
        self,
        workflow_id: str,
        level_id: Optional[str] = None,
        action: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[AuditLogModel]:
        """Return the history of a workflow, oldest first."""
        query = self.db.query(AuditLogModel).filter(
            AuditLogModel.workflow_id == workflow_id
        )
        if level_id:
            query = query.filter(AuditLogModel.level_id == level_id)
        if action:
            query = query.filter(AuditLogModel.action == action)
        query = query.order_by(AuditLogModel.id.asc())
        if limit:
            query = query.limit(limit)
        return query.all()
