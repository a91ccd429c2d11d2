"""
Workflow Engine: drives a deliverable version through its approval levels.

State machine::

    draft -> in_review <-> revision_requested
    in_review -> approved          (final level approved + checklist passed)
    draft | in_review | revision_requested -> rejected   (cancellation)

Every command runs in a single transaction: state change, audit entries and
revision rounds commit together or not at all. Events collected during the
command are published only after the commit.

Concurrency: rows carry ``lock_version`` and every UPDATE is a
compare-and-swap. An approval that does not complete its level writes only
its own approver slot, so approvers of the same level never conflict with
each other. The level is then settled in a second transaction which
completes it when the quorum is met; of two settlers racing, exactly one
advances the workflow. A level whose settle step never ran is picked up
again by ``complete_review``.

A rejection rewrites every slot it resets, and a final approval rewrites
the checklist, so neither can commit over a decision or a checklist edit
it did not see.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..db.audit_models import AuditLogModel
from ..db.audit_service import AuditTrail
from ..db.models import (
    ApprovalLevelModel,
    DeliverableVersionModel,
    LevelApproverModel,
    LevelCommentModel,
    ReviewWorkflowModel,
    RevisionRoundModel,
)
from ..policy import resubmission_gate
from ..policy.resubmission_gate import (
    PolicyConfig,
    ResubmissionContext,
    ResubmissionRequest,
    VersionRef,
)
from .approvers import (
    ApproverSpec,
    ExternalApprover,
    RoleApprover,
    RoleDirectory,
    UserApprover,
    resolve_approvers,
)
from .checklist import ChecklistGate, open_required_items
from .enums import (
    ApproverKind,
    ApproverStatus,
    ChecklistStatus,
    CommentType,
    Decision,
    LevelStatus,
    ResubmissionPolicy,
    RevisionReentry,
    RevisionRoundStatus,
    WorkflowStatus,
)
from .errors import (
    ApproverResolutionError,
    ChecklistIncomplete,
    ConcurrentModification,
    InvalidTransition,
    NotFound,
    UnauthorizedApprover,
    VersionAlreadyHasActiveWorkflow,
)
from .events import Event, EventPublisher, EventTypes
from .primitives import Actor, SYSTEM_ACTOR, generate_ulid, utc_now
from .templates import ChecklistItemDefinition, TemplateRegistry
from .transactions import atomic

logger = structlog.get_logger()

SETTLE_ATTEMPTS = 3


@dataclass
class DecisionOutcome:
    """What a recorded decision did to the workflow."""

    workflow: ReviewWorkflowModel
    level: ApprovalLevelModel
    approver: LevelApproverModel
    checklist_incomplete: Optional[ChecklistIncomplete] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "workflow_id": self.workflow.id,
            "level_id": self.level.id,
            "approver_status": self.approver.status,
            "level_status": self.level.status,
            "workflow_status": self.workflow.status,
            "current_level": self.workflow.current_level,
            "checklist_incomplete": (
                self.checklist_incomplete.to_dict()
                if self.checklist_incomplete
                else None
            ),
            "workflow": self.workflow.to_dict(),
        }


def _approver_ref(specs: Sequence[ApproverSpec]) -> Optional[str]:
    refs = []
    for spec in specs:
        if isinstance(spec, RoleApprover):
            refs.append(spec.role)
        elif isinstance(spec, UserApprover):
            refs.append(spec.approver_id)
        elif isinstance(spec, ExternalApprover):
            refs.append(spec.email)
    return ",".join(refs) or None


class WorkflowEngine:
    """Service orchestrating review workflows.

    Usage:
        engine = WorkflowEngine(db, roles=directory)
        wf = engine.create_workflow(version.id, "structured")
        engine.start_review(wf.id)
        engine.record_approver_decision(wf.id, level.id, "pm-1", "approve")
    """

    def __init__(
        self,
        db: Session,
        audit: Optional[AuditTrail] = None,
        templates: Optional[TemplateRegistry] = None,
        roles: Optional[RoleDirectory] = None,
        publisher: Optional[EventPublisher] = None,
        policy: Optional[PolicyConfig] = None,
        reentry: Optional[RevisionReentry] = None,
    ):
        self.db = db
        self.audit = audit or AuditTrail(db)
        self.templates = templates or TemplateRegistry()
        self.roles = roles or RoleDirectory()
        self.publisher = publisher or EventPublisher()
        self.policy = policy
        self.reentry = RevisionReentry(reentry or get_settings().revision_reentry)
        self.checklists = ChecklistGate(db, self.audit, self.templates)
        self._pending_events: List[Event] = []

    # -- transaction plumbing ---------------------------------------------

    @contextmanager
    def _transaction(self, **context: Any) -> Iterator[None]:
        self._pending_events = []
        try:
            with atomic(self.db, **context):
                yield
        except Exception:
            self._pending_events = []
            raise
        events, self._pending_events = self._pending_events, []
        self.publisher.publish_all(events)

    def _emit(self, event_type: str, **data: Any) -> None:
        self._pending_events.append(Event(event_type, data))

    # -- lookups ------------------------------------------------------------

    def _get(self, workflow_id: str) -> ReviewWorkflowModel:
        workflow = self.db.get(ReviewWorkflowModel, workflow_id)
        if workflow is None:
            raise NotFound("Workflow", workflow_id)
        return workflow

    @staticmethod
    def _level_in(workflow: ReviewWorkflowModel, level_id: str) -> ApprovalLevelModel:
        for level in workflow.levels:
            if level.id == level_id:
                return level
        raise NotFound("Level", level_id)

    def _active_workflow_for(self, version_id: str) -> Optional[ReviewWorkflowModel]:
        return (
            self.db.query(ReviewWorkflowModel)
            .filter(ReviewWorkflowModel.active_version_id == version_id)
            .first()
        )

    @staticmethod
    def _require_status(
        workflow: ReviewWorkflowModel, *allowed: WorkflowStatus, action: str
    ) -> None:
        if workflow.status not in [s.value for s in allowed]:
            raise InvalidTransition(
                f"Cannot {action} while workflow is {workflow.status}",
                workflow_id=workflow.id,
                workflow_status=workflow.status,
                current_level=workflow.current_level,
                allowed_statuses=[s.value for s in allowed],
            )

    # -- state changes (inside a transaction) ---------------------------------

    def _set_status(
        self,
        workflow: ReviewWorkflowModel,
        new_status: WorkflowStatus,
        actor: Optional[Actor],
        note: Optional[str] = None,
    ) -> None:
        old_status = workflow.status
        workflow.status = new_status.value
        workflow.updated_at = utc_now()
        if new_status.is_terminal:
            workflow.active_version_id = None
        self.audit.log_status_change(
            "Workflow",
            workflow.id,
            old_status,
            new_status.value,
            actor=actor,
            workflow_id=workflow.id,
            note=note,
        )

    def _activate_level(
        self,
        workflow: ReviewWorkflowModel,
        level: ApprovalLevelModel,
        actor: Optional[Actor],
    ) -> None:
        now = utc_now()
        old_status = level.status
        level.status = LevelStatus.IN_PROGRESS.value
        level.started_at = now
        level.completed_at = None
        level.deadline = (
            now + timedelta(hours=level.deadline_offset_hours)
            if level.deadline_offset_hours
            else None
        )
        workflow.current_level = level.level_number
        workflow.updated_at = now
        self.audit.record(
            "level.activated",
            "Level",
            level.id,
            actor=actor,
            workflow_id=workflow.id,
            level_id=level.id,
            before={"status": old_status},
            after={"status": level.status, "deadline": level.deadline.isoformat() if level.deadline else None},
            note=f"Level {level.level_number} ({level.name}) activated",
        )
        self._emit(
            EventTypes.LEVEL_ACTIVATED,
            workflow_id=workflow.id,
            level_id=level.id,
            level_number=level.level_number,
            deadline=level.deadline.isoformat() if level.deadline else None,
        )

    def _append_comment(
        self,
        workflow: ReviewWorkflowModel,
        level: ApprovalLevelModel,
        comment_type: CommentType,
        content: str,
        author_name: str,
        author_id: Optional[str],
        actor: Optional[Actor],
    ) -> LevelCommentModel:
        comment = LevelCommentModel(
            id=generate_ulid(),
            level_id=level.id,
            workflow_id=workflow.id,
            comment_type=CommentType(comment_type).value,
            content=content,
            author_name=author_name,
            author_id=author_id,
            round_number=workflow.revision_round,
            created_at=utc_now(),
        )
        self.db.add(comment)
        self.audit.record(
            "comment.added",
            "Comment",
            comment.id,
            actor=actor,
            workflow_id=workflow.id,
            level_id=level.id,
            after=comment.to_dict(),
        )
        return comment

    def _approve_workflow(
        self, workflow: ReviewWorkflowModel, actor: Optional[Actor]
    ) -> None:
        workflow.current_level = len(workflow.levels) + 1
        if workflow.checklist is not None:
            # Write the checklist so a concurrent item edit conflicts with approval.
            workflow.checklist.updated_at = utc_now()
        self._set_status(workflow, WorkflowStatus.APPROVED, actor)
        self._emit(EventTypes.WORKFLOW_APPROVED, workflow_id=workflow.id)

    def _checklist_block(
        self, workflow: ReviewWorkflowModel, actor: Optional[Actor]
    ) -> Optional[ChecklistIncomplete]:
        checklist = workflow.checklist
        if checklist is None:
            return None
        self.checklists.refresh_result(checklist, actor=actor)
        if checklist.status == ChecklistStatus.PASSED:
            return None
        return ChecklistIncomplete(
            "Quality checklist has not passed; final approval is blocked",
            workflow_id=workflow.id,
            checklist_id=checklist.id,
            checklist_status=checklist.status,
            overall_score=checklist.overall_score,
            open_items=open_required_items(checklist),
        )

    def _complete_level(
        self,
        workflow: ReviewWorkflowModel,
        level: ApprovalLevelModel,
        actor: Optional[Actor],
    ) -> Optional[ChecklistIncomplete]:
        """Approve a level whose quorum is met and move the workflow on."""
        now = utc_now()
        old_status = level.status
        level.status = LevelStatus.APPROVED.value
        level.completed_at = now
        # Touch the workflow so its row is part of the compare-and-swap.
        workflow.updated_at = now
        self.audit.log_status_change(
            "Level",
            level.id,
            old_status,
            level.status,
            actor=actor,
            workflow_id=workflow.id,
            level_id=level.id,
            note=f"Quorum met ({level.approved_count}/{level.required_approvals})",
        )
        self._emit(EventTypes.LEVEL_APPROVED, workflow_id=workflow.id, level_id=level.id)

        if level.level_number < len(workflow.levels):
            self._activate_level(
                workflow, workflow.level_by_number(level.level_number + 1), actor
            )
            return None

        blocked = self._checklist_block(workflow, actor)
        if blocked is not None:
            self.audit.record(
                "workflow.final_approval_blocked",
                "Workflow",
                workflow.id,
                actor=actor,
                workflow_id=workflow.id,
                level_id=level.id,
                after=blocked.context,
                note=blocked.message,
            )
            return blocked
        self._approve_workflow(workflow, actor)
        return None

    def _reject_level(
        self,
        workflow: ReviewWorkflowModel,
        level: ApprovalLevelModel,
        rejecting: LevelApproverModel,
        reason: Optional[str],
        actor: Optional[Actor],
    ) -> None:
        """Fail-fast rejection: open a revision round and rewind the workflow."""
        now = utc_now()
        old_status = level.status
        level.status = LevelStatus.REJECTED.value
        level.completed_at = now
        self.audit.log_status_change(
            "Level",
            level.id,
            old_status,
            level.status,
            actor=actor,
            workflow_id=workflow.id,
            level_id=level.id,
            note=reason,
        )
        self._emit(
            EventTypes.LEVEL_REJECTED,
            workflow_id=workflow.id,
            level_id=level.id,
            reason=reason,
        )

        new_round = workflow.revision_round + 1
        revision = RevisionRoundModel(
            id=generate_ulid(),
            workflow_id=workflow.id,
            round_number=new_round,
            status=RevisionRoundStatus.REQUESTED.value,
            requested_by=rejecting.approver_name,
            requested_by_id=rejecting.approver_id,
            reason=reason,
            level_number=level.level_number,
            version_id=workflow.version_id,
            snapshot=[
                {
                    "level_number": lvl.level_number,
                    "name": lvl.name,
                    "status": lvl.status,
                    "approvers": [
                        {
                            "approver_id": a.approver_id,
                            "approver_name": a.approver_name,
                            "status": a.status,
                            "comments": a.comments,
                        }
                        for a in lvl.approvers
                    ],
                }
                for lvl in workflow.levels
            ],
            created_at=now,
        )
        workflow.revision_rounds.append(revision)
        workflow.revision_round = new_round
        self._set_status(
            workflow, WorkflowStatus.REVISION_REQUESTED, actor, note=reason
        )

        reentry = (
            level.level_number
            if self.reentry == RevisionReentry.REJECTED_LEVEL
            else 1
        )
        for lvl in workflow.levels:
            if lvl.level_number < reentry:
                continue
            for approver in lvl.approvers:
                approver.reset()
            # The rejected level keeps its status until it is reached again.
            if lvl is not level:
                lvl.status = LevelStatus.PENDING.value
                lvl.started_at = None
                lvl.completed_at = None
                lvl.deadline = None
        self._activate_level(workflow, workflow.level_by_number(reentry), actor)

        self._emit(
            EventTypes.WORKFLOW_REVISION_REQUESTED,
            workflow_id=workflow.id,
            round=new_round,
            reason=reason,
        )

    # -- commands -------------------------------------------------------------

    def create_workflow(
        self,
        version_id: str,
        workflow_type: str,
        approver_overrides: Optional[Mapping[int, Sequence[ApproverSpec]]] = None,
        checklist_template_id: Optional[str] = None,
        checklist_items: Optional[Sequence[ChecklistItemDefinition]] = None,
        actor: Optional[Actor] = None,
    ) -> ReviewWorkflowModel:
        """Create a draft workflow for a version from a workflow template."""
        with self._transaction(version_id=version_id, workflow_type=workflow_type):
            version = self.db.get(DeliverableVersionModel, version_id)
            if version is None:
                raise NotFound("Version", version_id)
            active = self._active_workflow_for(version_id)
            if active is not None:
                raise VersionAlreadyHasActiveWorkflow(
                    f"Version {version_id} already has an active workflow",
                    version_id=version_id,
                    workflow_id=active.id,
                    workflow_status=active.status,
                )

            template = self.templates.get(workflow_type)
            overrides = dict(approver_overrides or {})
            unknown = sorted(set(overrides) - set(range(1, len(template.levels) + 1)))
            if unknown:
                raise ApproverResolutionError(
                    f"Approver overrides name unknown levels {unknown}",
                    workflow_type=workflow_type,
                    level_count=len(template.levels),
                )

            now = utc_now()
            workflow = ReviewWorkflowModel(
                id=generate_ulid(),
                version_id=version_id,
                active_version_id=version_id,
                workflow_type=workflow_type,
                status=WorkflowStatus.DRAFT.value,
                current_level=1,
                revision_round=1,
                created_at=now,
                updated_at=now,
            )
            for number, definition in enumerate(template.levels, start=1):
                specs = list(overrides.get(number, definition.approvers))
                resolved = resolve_approvers(specs, self.roles, level_name=definition.name)
                level = ApprovalLevelModel(
                    id=generate_ulid(),
                    level_number=number,
                    name=definition.name,
                    description=definition.description,
                    approver_type=specs[0].kind,
                    approver_ref=_approver_ref(specs),
                    min_approvers=definition.min_approvers,
                    can_delegate=definition.can_delegate,
                    deadline_offset_hours=definition.deadline_offset_hours,
                    status=LevelStatus.PENDING.value,
                )
                for position, (kind, identity) in enumerate(resolved):
                    level.approvers.append(
                        LevelApproverModel(
                            id=generate_ulid(),
                            position=position,
                            approver_id=identity.approver_id,
                            approver_name=identity.name,
                            approver_email=identity.email,
                            approver_kind=kind.value,
                            status=ApproverStatus.PENDING.value,
                            created_at=now,
                        )
                    )
                workflow.levels.append(level)

            self.db.add(workflow)
            try:
                self.db.flush()
            except IntegrityError as e:
                raise VersionAlreadyHasActiveWorkflow(
                    f"Version {version_id} already has an active workflow",
                    version_id=version_id,
                ) from e

            self.audit.log_create(
                "Workflow",
                workflow.id,
                workflow.to_dict(nested=False),
                actor=actor,
                workflow_id=workflow.id,
            )

            template_id = checklist_template_id
            if not template_id and not checklist_items:
                template_id = template.checklist_template
            if template_id or checklist_items:
                self.checklists.build(workflow, template_id, checklist_items, actor)

        logger.info(
            "workflow_created",
            workflow_id=workflow.id,
            version_id=version_id,
            workflow_type=workflow_type,
            levels=len(workflow.levels),
        )
        return workflow

    def start_review(
        self, workflow_id: str, actor: Optional[Actor] = None
    ) -> ReviewWorkflowModel:
        """draft -> in_review; level 1 becomes in_progress."""
        with self._transaction(workflow_id=workflow_id):
            workflow = self._get(workflow_id)
            self._require_status(workflow, WorkflowStatus.DRAFT, action="start review")
            self._set_status(workflow, WorkflowStatus.IN_REVIEW, actor)
            self._activate_level(workflow, workflow.level_by_number(1), actor)
            self._emit(EventTypes.WORKFLOW_REVIEW_STARTED, workflow_id=workflow.id)

        logger.info("review_started", workflow_id=workflow_id)
        return workflow

    def record_approver_decision(
        self,
        workflow_id: str,
        level_id: str,
        approver_id: str,
        decision: Decision,
        comment: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> DecisionOutcome:
        """Record one approver's decision on an in-progress level.

        Raises:
            NotFound: unknown workflow or level
            InvalidTransition: workflow not in review, level not in progress,
                or the approver already decided this round
            UnauthorizedApprover: approver not assigned to the level
            ConcurrentModification: a concurrent write won the race
        """
        decision = Decision(decision)
        log = logger.bind(workflow_id=workflow_id, level_id=level_id, approver_id=approver_id)
        completed = False
        blocked: Optional[ChecklistIncomplete] = None

        with self._transaction(
            workflow_id=workflow_id, level_id=level_id, approver_id=approver_id
        ):
            workflow = self._get(workflow_id)
            self._require_status(
                workflow, WorkflowStatus.IN_REVIEW, action="record a decision"
            )
            level = self._level_in(workflow, level_id)
            if level.status != LevelStatus.IN_PROGRESS:
                raise InvalidTransition(
                    f"Level {level.level_number} is {level.status}",
                    workflow_id=workflow.id,
                    level_id=level.id,
                    level_status=level.status,
                    current_level=workflow.current_level,
                )
            try:
                slot = level.approver_for(approver_id)
            except LookupError:
                raise UnauthorizedApprover(
                    f"{approver_id} is not an approver of level {level.level_number}",
                    workflow_id=workflow.id,
                    level_id=level.id,
                    approver_id=approver_id,
                    assigned=[a.approver_id for a in level.approvers],
                ) from None
            if slot.status != ApproverStatus.PENDING:
                raise InvalidTransition(
                    f"{approver_id} already decided in round {workflow.revision_round}",
                    workflow_id=workflow.id,
                    level_id=level.id,
                    approver_id=approver_id,
                    approver_status=slot.status,
                )

            actor = actor or Actor(actor_id=approver_id, display=slot.approver_name)
            now = utc_now()
            if comment:
                self._append_comment(
                    workflow,
                    level,
                    CommentType.APPROVAL_NOTE
                    if decision == Decision.APPROVE
                    else CommentType.FEEDBACK,
                    comment,
                    author_name=slot.approver_name,
                    author_id=slot.approver_id,
                    actor=actor,
                )

            if decision == Decision.APPROVE:
                slot.status = ApproverStatus.APPROVED.value
                slot.approved_at = now
            else:
                slot.status = ApproverStatus.REJECTED.value
                slot.rejected_at = now
            slot.comments = comment
            self.audit.record(
                f"approver.{slot.status}",
                "Approver",
                slot.id,
                actor=actor,
                workflow_id=workflow.id,
                level_id=level.id,
                before={"status": ApproverStatus.PENDING.value},
                after={"status": slot.status},
                note=comment,
            )

            if decision == Decision.REJECT:
                self._reject_level(workflow, level, slot, comment, actor)
                completed = True
            elif level.quorum_met:
                blocked = self._complete_level(workflow, level, actor)
                completed = True

        log.info(
            "approver_decision_recorded",
            decision=decision.value,
            level_status=level.status,
            workflow_status=workflow.status,
        )

        if not completed:
            blocked = self._settle_level(workflow_id, level_id, actor)

        return DecisionOutcome(
            workflow=workflow,
            level=level,
            approver=slot,
            checklist_incomplete=blocked,
        )

    def _settle_level(
        self, workflow_id: str, level_id: str, actor: Optional[Actor]
    ) -> Optional[ChecklistIncomplete]:
        """Complete a level whose quorum was reached by concurrent approvals.

        A conflict means some other write landed first. That is either a
        settler that already completed the level or an unrelated change such
        as a checklist edit, so the check is re-run against fresh state.
        """
        for attempt in range(1, SETTLE_ATTEMPTS + 1):
            blocked = None
            try:
                with self._transaction(workflow_id=workflow_id, level_id=level_id):
                    workflow = self._get(workflow_id)
                    level = self._level_in(workflow, level_id)
                    if (
                        workflow.status == WorkflowStatus.IN_REVIEW
                        and level.status == LevelStatus.IN_PROGRESS
                        and level.quorum_met
                    ):
                        blocked = self._complete_level(
                            workflow, level, actor or SYSTEM_ACTOR
                        )
                return blocked
            except ConcurrentModification:
                logger.info(
                    "level_settle_lost_race",
                    workflow_id=workflow_id,
                    level_id=level_id,
                    attempt=attempt,
                )
        logger.warning("level_settle_gave_up", workflow_id=workflow_id, level_id=level_id)
        return None

    def _recover_stalled_level(
        self, workflow_id: str, actor: Optional[Actor]
    ) -> bool:
        """Settle the current level if its quorum is met but it never completed."""
        workflow = self._get(workflow_id)
        if workflow.status != WorkflowStatus.IN_REVIEW:
            return False
        level = workflow.level_by_number(workflow.current_level)
        if level.status != LevelStatus.IN_PROGRESS or not level.quorum_met:
            return False
        logger.warning(
            "stalled_level_recovered",
            workflow_id=workflow_id,
            level_id=level.id,
            level_number=level.level_number,
        )
        self._settle_level(workflow_id, level.id, actor)
        return True

    def resubmit_after_revision(
        self,
        workflow_id: str,
        new_version_id: Optional[str] = None,
        change_note: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> ReviewWorkflowModel:
        """revision_requested -> in_review at the re-entry level.

        Raises:
            PolicyError: the resubmission gate refused the request
        """
        with self._transaction(workflow_id=workflow_id):
            workflow = self._get(workflow_id)
            self._require_status(
                workflow, WorkflowStatus.REVISION_REQUESTED, action="resubmit"
            )
            current = workflow.version
            proposed = None
            if new_version_id:
                proposed = self.db.get(DeliverableVersionModel, new_version_id)
                if proposed is None:
                    raise NotFound("Version", new_version_id)

            request = resubmission_gate.evaluate(
                ResubmissionRequest(new_version_id=new_version_id, change_note=change_note),
                ResubmissionContext(
                    current=VersionRef(
                        version_id=current.id,
                        deliverable_id=current.deliverable_id,
                        version_number=current.version_number,
                    ),
                    proposed=VersionRef(
                        version_id=proposed.id,
                        deliverable_id=proposed.deliverable_id,
                        version_number=proposed.version_number,
                    )
                    if proposed
                    else None,
                ),
                self.policy,
            )

            if proposed is not None:
                active = self._active_workflow_for(proposed.id)
                if active is not None:
                    raise VersionAlreadyHasActiveWorkflow(
                        f"Version {proposed.id} already has an active workflow",
                        version_id=proposed.id,
                        workflow_id=active.id,
                    )
                self.audit.record(
                    "workflow.version_rebound",
                    "Workflow",
                    workflow.id,
                    actor=actor,
                    workflow_id=workflow.id,
                    before={"version_id": current.id},
                    after={"version_id": proposed.id},
                )
                workflow.version = proposed
                workflow.active_version_id = proposed.id

            self._set_status(
                workflow, WorkflowStatus.IN_REVIEW, actor, note=request.change_note
            )
            level = workflow.level_by_number(workflow.current_level)
            if request.change_note:
                self._append_comment(
                    workflow,
                    level,
                    CommentType.GENERAL,
                    request.change_note,
                    author_name=(actor or SYSTEM_ACTOR).label,
                    author_id=(actor or SYSTEM_ACTOR).actor_id,
                    actor=actor,
                )
            self._activate_level(workflow, level, actor)
            self._emit(
                EventTypes.WORKFLOW_RESUBMITTED,
                workflow_id=workflow.id,
                round=workflow.revision_round,
                version_id=workflow.version_id if proposed is None else proposed.id,
            )

        logger.info(
            "workflow_resubmitted",
            workflow_id=workflow_id,
            round=workflow.revision_round,
            new_version=bool(new_version_id),
        )
        return workflow

    def complete_review(
        self, workflow_id: str, actor: Optional[Actor] = None
    ) -> ReviewWorkflowModel:
        """Final approval once the last level is approved.

        A current level left in progress with its quorum met (its settle
        step never ran) is completed first. If the final level is still not
        approved after that, the workflow is returned as it now stands.

        Raises:
            ChecklistIncomplete: the checklist has not passed
        """
        if self._recover_stalled_level(workflow_id, actor):
            workflow = self._get(workflow_id)
            if (
                workflow.status != WorkflowStatus.IN_REVIEW
                or workflow.levels[-1].status != LevelStatus.APPROVED
            ):
                return workflow

        with self._transaction(workflow_id=workflow_id):
            workflow = self._get(workflow_id)
            self._require_status(
                workflow, WorkflowStatus.IN_REVIEW, action="complete review"
            )
            final = workflow.levels[-1]
            if final.status != LevelStatus.APPROVED:
                raise InvalidTransition(
                    f"Final level is {final.status}",
                    workflow_id=workflow.id,
                    level_id=final.id,
                    level_status=final.status,
                    current_level=workflow.current_level,
                )
            blocked = self._checklist_block(workflow, actor)
            if blocked is not None:
                raise blocked
            self._approve_workflow(workflow, actor)

        logger.info("workflow_approved", workflow_id=workflow_id)
        return workflow

    def cancel_workflow(
        self, workflow_id: str, reason: str, actor: Optional[Actor] = None
    ) -> ReviewWorkflowModel:
        """Terminate a workflow as rejected and free its version."""
        with self._transaction(workflow_id=workflow_id):
            workflow = self._get(workflow_id)
            self._require_status(
                workflow,
                WorkflowStatus.DRAFT,
                WorkflowStatus.IN_REVIEW,
                WorkflowStatus.REVISION_REQUESTED,
                action="cancel",
            )
            workflow.cancel_reason = reason
            self._set_status(workflow, WorkflowStatus.REJECTED, actor, note=reason)
            self._emit(EventTypes.WORKFLOW_REJECTED, workflow_id=workflow.id, reason=reason)

        logger.info("workflow_cancelled", workflow_id=workflow_id, reason=reason)
        return workflow

    def add_comment(
        self,
        level_id: str,
        comment_type: CommentType,
        content: str,
        author_name: str,
        author_id: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> LevelCommentModel:
        """Append a comment to a level of a non-terminal workflow."""
        with self._transaction(level_id=level_id):
            level = self.db.get(ApprovalLevelModel, level_id)
            if level is None:
                raise NotFound("Level", level_id)
            workflow = level.workflow
            if WorkflowStatus(workflow.status).is_terminal:
                raise InvalidTransition(
                    f"Workflow is {workflow.status}; comments are closed",
                    workflow_id=workflow.id,
                    workflow_status=workflow.status,
                )
            comment = self._append_comment(
                workflow,
                level,
                comment_type,
                content,
                author_name=author_name,
                author_id=author_id,
                actor=actor or Actor(actor_id=author_id or author_name, display=author_name),
            )
        return comment

    def delegate_approval(
        self,
        workflow_id: str,
        level_id: str,
        approver_id: str,
        delegate_id: str,
        delegate_name: str,
        delegate_email: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> LevelApproverModel:
        """Hand a pending approver slot to another identity."""
        with self._transaction(workflow_id=workflow_id, level_id=level_id):
            workflow = self._get(workflow_id)
            self._require_status(
                workflow,
                WorkflowStatus.DRAFT,
                WorkflowStatus.IN_REVIEW,
                WorkflowStatus.REVISION_REQUESTED,
                action="delegate",
            )
            level = self._level_in(workflow, level_id)
            if not level.can_delegate:
                raise InvalidTransition(
                    f"Level {level.level_number} does not allow delegation",
                    workflow_id=workflow.id,
                    level_id=level.id,
                )
            try:
                slot = level.approver_for(approver_id)
            except LookupError:
                raise UnauthorizedApprover(
                    f"{approver_id} is not an approver of level {level.level_number}",
                    workflow_id=workflow.id,
                    level_id=level.id,
                    approver_id=approver_id,
                ) from None
            if slot.status != ApproverStatus.PENDING:
                raise InvalidTransition(
                    f"{approver_id} already decided",
                    approver_id=approver_id,
                    approver_status=slot.status,
                )
            if any(a.approver_id == delegate_id for a in level.approvers):
                raise InvalidTransition(
                    f"{delegate_id} is already an approver of this level",
                    level_id=level.id,
                    approver_id=delegate_id,
                )

            before = {"approver_id": slot.approver_id, "approver_name": slot.approver_name}
            slot.delegated_from = slot.approver_id
            slot.approver_id = delegate_id
            slot.approver_name = delegate_name
            slot.approver_email = delegate_email
            slot.approver_kind = ApproverKind.USER.value
            self.audit.record(
                "approver.delegated",
                "Approver",
                slot.id,
                actor=actor or Actor(actor_id=approver_id),
                workflow_id=workflow.id,
                level_id=level.id,
                before=before,
                after={"approver_id": delegate_id, "approver_name": delegate_name},
            )

        logger.info(
            "approval_delegated",
            workflow_id=workflow_id,
            level_id=level_id,
            delegated_from=approver_id,
            delegate_id=delegate_id,
        )
        return slot

    # -- queries --------------------------------------------------------------

    def get_workflow(self, version_id: str) -> ReviewWorkflowModel:
        """The active workflow of a version, else its most recent one."""
        workflow = self._active_workflow_for(version_id)
        if workflow is None:
            workflow = (
                self.db.query(ReviewWorkflowModel)
                .filter(ReviewWorkflowModel.version_id == version_id)
                .order_by(ReviewWorkflowModel.created_at.desc(), ReviewWorkflowModel.id.desc())
                .first()
            )
        if workflow is None:
            raise NotFound("Workflow for version", version_id)
        return workflow

    def get_workflow_by_id(self, workflow_id: str) -> ReviewWorkflowModel:
        return self._get(workflow_id)

    def list_workflows(
        self,
        status: Optional[WorkflowStatus] = None,
        deliverable_id: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """List workflows with per-status counts for the same deliverable scope."""
        base = self.db.query(ReviewWorkflowModel)
        if deliverable_id:
            base = base.join(
                DeliverableVersionModel,
                DeliverableVersionModel.id == ReviewWorkflowModel.version_id,
            ).filter(DeliverableVersionModel.deliverable_id == deliverable_id)

        counts = {s.value: 0 for s in WorkflowStatus}
        for row_status, count in (
            base.with_entities(ReviewWorkflowModel.status, func.count(ReviewWorkflowModel.id))
            .group_by(ReviewWorkflowModel.status)
            .all()
        ):
            counts[row_status] = count

        query = base
        if status:
            query = query.filter(ReviewWorkflowModel.status == WorkflowStatus(status).value)
        workflows = (
            query.order_by(ReviewWorkflowModel.created_at.desc(), ReviewWorkflowModel.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return {
            "workflows": workflows,
            "total": sum(counts.values()),
            "by_status": counts,
        }

    def get_audit_trail(self, workflow_id: str) -> List[AuditLogModel]:
        self._get(workflow_id)
        return self.audit.query(workflow_id)

    def find_overdue_levels(self, now: Optional[datetime] = None) -> List[ApprovalLevelModel]:
        """In-progress levels of workflows under review whose deadline has passed."""
        now = now or utc_now()
        return (
            self.db.query(ApprovalLevelModel)
            .join(ReviewWorkflowModel, ReviewWorkflowModel.id == ApprovalLevelModel.workflow_id)
            .filter(
                ReviewWorkflowModel.status == WorkflowStatus.IN_REVIEW.value,
                ApprovalLevelModel.status == LevelStatus.IN_PROGRESS.value,
                ApprovalLevelModel.deadline.isnot(None),
                ApprovalLevelModel.deadline < now,
            )
            .order_by(ApprovalLevelModel.deadline.asc())
            .all()
        )


class ReviewRuntime:
    """Process-wide collaborators shared by every engine instance."""

    def __init__(
        self,
        templates: Optional[TemplateRegistry] = None,
        roles: Optional[RoleDirectory] = None,
        publisher: Optional[EventPublisher] = None,
        policy: Optional[PolicyConfig] = None,
        reentry: RevisionReentry = RevisionReentry.FIRST_LEVEL,
    ):
        self.templates = templates or TemplateRegistry()
        self.roles = roles or RoleDirectory()
        self.publisher = publisher or EventPublisher()
        self.policy = policy or PolicyConfig()
        self.reentry = reentry

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReviewRuntime":
        return cls(
            templates=TemplateRegistry.from_settings(settings),
            roles=RoleDirectory.from_file(settings.role_directory_file)
            if settings.role_directory_file
            else RoleDirectory(),
            policy=PolicyConfig(policy=ResubmissionPolicy(settings.resubmission_policy)),
            reentry=RevisionReentry(settings.revision_reentry),
        )

    def engine(self, db: Session) -> WorkflowEngine:
        return WorkflowEngine(
            db,
            templates=self.templates,
            roles=self.roles,
            publisher=self.publisher,
            policy=self.policy,
            reentry=self.reentry,
        )

    def checklists(self, db: Session) -> ChecklistGate:
        return ChecklistGate(db, templates=self.templates)


@lru_cache
def get_runtime() -> ReviewRuntime:
    """Runtime built from application settings, once per process."""
    return ReviewRuntime.from_settings(get_settings())
