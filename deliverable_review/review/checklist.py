"""
Checklist Gate: scoring and pass/fail of quality checklists.

Scoring rules:
- items marked ``n_a`` are not applicable and are ignored entirely
- overall_score = passed / applicable items (0.0 when nothing is applicable)
- status is ``passed`` when every applicable required item passed,
  ``failed`` when any applicable required item failed, otherwise ``pending``

The gate knows nothing about levels; the engine consults it only when the
final level is approved.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.orm import Session

from ..db.audit_service import AuditTrail
from ..db.models import (
    QualityChecklistModel,
    QualityCheckItemModel,
    ReviewWorkflowModel,
)
from .enums import ChecklistItemStatus, ChecklistStatus, WorkflowStatus
from .errors import InvalidTransition, NotFound
from .primitives import Actor, generate_ulid, utc_now
from .templates import ChecklistItemDefinition, TemplateRegistry
from .transactions import atomic

logger = structlog.get_logger()


def score_items(items: Iterable[QualityCheckItemModel]) -> Tuple[ChecklistStatus, float]:
    """Compute (status, overall_score) for a set of checklist items."""
    applicable = [i for i in items if i.status != ChecklistItemStatus.NOT_APPLICABLE]
    passed = [i for i in applicable if i.status == ChecklistItemStatus.PASSED]
    score = round(len(passed) / len(applicable), 4) if applicable else 0.0

    required = [i for i in applicable if i.is_required]
    if any(i.status == ChecklistItemStatus.FAILED for i in required):
        return ChecklistStatus.FAILED, score
    if all(i.status == ChecklistItemStatus.PASSED for i in required):
        return ChecklistStatus.PASSED, score
    return ChecklistStatus.PENDING, score


def open_required_items(checklist: QualityChecklistModel) -> List[dict]:
    """Required applicable items that have not passed, for error reports."""
    return [
        {"id": i.id, "category": i.category, "title": i.title, "status": i.status}
        for i in checklist.items
        if i.is_required
        and i.status not in (ChecklistItemStatus.PASSED, ChecklistItemStatus.NOT_APPLICABLE)
    ]


class ChecklistGate:
    """Service for quality checklists."""

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditTrail] = None,
        templates: Optional[TemplateRegistry] = None,
    ):
        self.db = db
        self.audit = audit or AuditTrail(db)
        self.templates = templates or TemplateRegistry()

    # -- queries -----------------------------------------------------------

    def get_checklist(self, checklist_id: str) -> QualityChecklistModel:
        checklist = self.db.get(QualityChecklistModel, checklist_id)
        if checklist is None:
            raise NotFound("Checklist", checklist_id)
        return checklist

    def get_item(self, item_id: str) -> QualityCheckItemModel:
        item = self.db.get(QualityCheckItemModel, item_id)
        if item is None:
            raise NotFound("ChecklistItem", item_id)
        return item

    # -- in-transaction helpers (caller commits) -----------------------------

    def build(
        self,
        workflow: ReviewWorkflowModel,
        template_id: Optional[str] = None,
        items: Optional[Sequence[ChecklistItemDefinition]] = None,
        actor: Optional[Actor] = None,
    ) -> QualityChecklistModel:
        """Create a checklist on ``workflow`` inside the current transaction."""
        if workflow.checklist is not None:
            raise InvalidTransition(
                "Workflow already has a checklist",
                workflow_id=workflow.id,
                checklist_id=workflow.checklist.id,
            )
        if template_id:
            items = self.templates.checklist(template_id).items
        if not items:
            raise InvalidTransition(
                "A checklist needs a template or at least one item",
                workflow_id=workflow.id,
            )

        now = utc_now()
        checklist = QualityChecklistModel(
            id=generate_ulid(),
            workflow_id=workflow.id,
            template_id=template_id,
            status=ChecklistStatus.PENDING.value,
            overall_score=0.0,
            created_at=now,
            updated_at=now,
        )
        for position, definition in enumerate(items):
            checklist.items.append(
                QualityCheckItemModel(
                    id=generate_ulid(),
                    position=position,
                    category=definition.category,
                    title=definition.title,
                    description=definition.description,
                    is_required=definition.is_required,
                    status=ChecklistItemStatus.PENDING.value,
                    created_at=now,
                )
            )
        workflow.checklist = checklist
        self.db.add(checklist)
        self.db.flush()
        self.refresh_result(checklist, actor=actor)
        self.audit.log_create(
            "Checklist",
            checklist.id,
            checklist.to_dict(),
            actor=actor,
            workflow_id=workflow.id,
        )
        return checklist

    def refresh_result(
        self, checklist: QualityChecklistModel, actor: Optional[Actor] = None
    ) -> QualityChecklistModel:
        """Recompute status and score; writes only when something changed."""
        status, score = score_items(checklist.items)
        old_status = checklist.status
        if old_status == status and checklist.overall_score == score:
            return checklist

        now = utc_now()
        checklist.overall_score = score
        checklist.status = status.value
        checklist.updated_at = now
        if old_status != status:
            if status == ChecklistStatus.PASSED:
                checklist.passed_at = now
            elif status == ChecklistStatus.FAILED:
                checklist.failed_at = now
            self.audit.log_status_change(
                "Checklist",
                checklist.id,
                old_status,
                status.value,
                actor=actor,
                workflow_id=checklist.workflow_id,
                note=f"Checklist {status.value} (score {score:.2f})",
            )
        return checklist

    # -- commands ------------------------------------------------------------

    def attach_checklist(
        self,
        workflow_id: str,
        template_id: Optional[str] = None,
        items: Optional[Sequence[ChecklistItemDefinition]] = None,
        actor: Optional[Actor] = None,
    ) -> QualityChecklistModel:
        """Attach a checklist to a non-terminal workflow."""
        with atomic(self.db, workflow_id=workflow_id):
            workflow = self.db.get(ReviewWorkflowModel, workflow_id)
            if workflow is None:
                raise NotFound("Workflow", workflow_id)
            self._ensure_open(workflow)
            checklist = self.build(workflow, template_id, items, actor=actor)
        logger.info(
            "checklist_attached",
            workflow_id=workflow_id,
            checklist_id=checklist.id,
            items=len(checklist.items),
        )
        return checklist

    def evaluate(
        self, checklist_id: str, actor: Optional[Actor] = None
    ) -> QualityChecklistModel:
        """Re-evaluate a checklist and persist its status and score."""
        with atomic(self.db, checklist_id=checklist_id):
            checklist = self.refresh_result(self.get_checklist(checklist_id), actor)
        return checklist

    def set_item_status(
        self,
        item_id: str,
        status: ChecklistItemStatus,
        checked_by: str,
        notes: Optional[str] = None,
        score: Optional[int] = None,
        actor: Optional[Actor] = None,
    ) -> QualityChecklistModel:
        """Update one item and re-evaluate its checklist."""
        status = ChecklistItemStatus(status)
        if score is not None and not 0 <= score <= 100:
            raise ValueError("score must be between 0 and 100")

        with atomic(self.db, item_id=item_id):
            item = self.get_item(item_id)
            checklist = item.checklist
            workflow = checklist.workflow
            self._ensure_open(workflow)
            # Touch the workflow so a racing final approval conflicts.
            workflow.updated_at = utc_now()

            before = {"status": item.status, "score": item.score}
            item.status = status.value
            item.checked_by = checked_by
            item.checked_at = utc_now()
            if notes is not None:
                item.notes = notes
            if score is not None:
                item.score = score
            self.audit.record(
                "checklist_item.updated",
                "ChecklistItem",
                item.id,
                actor=actor or Actor(actor_id=checked_by),
                workflow_id=checklist.workflow_id,
                before=before,
                after={"status": item.status, "score": item.score},
                note=notes,
            )
            self.refresh_result(checklist, actor=actor)

        logger.info(
            "checklist_item_updated",
            item_id=item_id,
            checklist_id=checklist.id,
            item_status=status.value,
            checklist_status=checklist.status,
        )
        return checklist

    @staticmethod
    def _ensure_open(workflow: ReviewWorkflowModel) -> None:
        if WorkflowStatus(workflow.status).is_terminal:
            raise InvalidTransition(
                f"Workflow is {workflow.status}; checklist is read-only",
                workflow_id=workflow.id,
                workflow_status=workflow.status,
            )
