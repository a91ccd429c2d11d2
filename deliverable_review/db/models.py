"""
SQLAlchemy models for the deliverable review workflow.

Mutable rows (workflow, level, approver slot, checklist, checklist item)
carry a ``lock_version`` column registered as the mapper's version counter:
every UPDATE is issued as ``... WHERE id = :id AND lock_version = :seen`` and
a mismatch raises ``StaleDataError`` on flush.

Versions, revision rounds and comments are append-only; an attempt to
update one of their columns raises ``ImmutabilityError``.
"""

from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
    inspect,
)
from sqlalchemy.orm import relationship
from sqlalchemy.orm.attributes import flag_modified

from ..review.enums import (
    ApproverKind,
    ApproverStatus,
    ChecklistItemStatus,
    ChecklistStatus,
    CommentAuthorType,
    CommentType,
    LevelStatus,
    RevisionRoundStatus,
    WorkflowStatus,
)
from ..review.errors import ImmutabilityError
from ..review.primitives import generate_ulid, isoformat, utc_now
from .base import Base


def _enum(enum_cls, name: str) -> Enum:
    return Enum(*[member.value for member in enum_cls], name=name)


workflow_status_enum = _enum(WorkflowStatus, "review_workflow_status")
level_status_enum = _enum(LevelStatus, "review_level_status")
approver_status_enum = _enum(ApproverStatus, "review_approver_status")
approver_kind_enum = _enum(ApproverKind, "review_approver_kind")
comment_type_enum = _enum(CommentType, "review_comment_type")
comment_author_type_enum = _enum(CommentAuthorType, "review_comment_author_type")
revision_round_status_enum = _enum(RevisionRoundStatus, "review_round_status")
checklist_status_enum = _enum(ChecklistStatus, "review_checklist_status")
checklist_item_status_enum = _enum(ChecklistItemStatus, "review_check_status")


class DeliverableModel(Base):
    """Stable identity of a work product. Owned by the catalog, not the engine."""

    __tablename__ = "deliverables"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    title = Column(String(256), nullable=False)
    type = Column(String(64), nullable=False, index=True)
    project_id = Column(String(128), nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    versions = relationship(
        "DeliverableVersionModel",
        order_by="DeliverableVersionModel.version_number",
        viewonly=True,
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "project_id": self.project_id,
            "created_at": isoformat(self.created_at),
        }


class DeliverableVersionModel(Base):
    """Immutable snapshot of a deliverable submitted for review."""

    __tablename__ = "deliverable_versions"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    deliverable_id = Column(
        String(36), ForeignKey("deliverables.id"), nullable=False, index=True
    )
    version_number = Column(Integer, nullable=False)
    file_url = Column(String(2000), nullable=True)
    change_log = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    deliverable = relationship("DeliverableModel")

    __table_args__ = (
        UniqueConstraint(
            "deliverable_id", "version_number", name="uq_deliverable_version_number"
        ),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "deliverable_id": self.deliverable_id,
            "version_number": self.version_number,
            "file_url": self.file_url,
            "change_log": self.change_log,
            "created_at": isoformat(self.created_at),
        }


class ReviewWorkflowModel(Base):
    """The approval process for one deliverable version."""

    __tablename__ = "review_workflows"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    version_id = Column(
        String(36), ForeignKey("deliverable_versions.id"), nullable=False, index=True
    )
    # Mirrors version_id while the workflow is non-terminal; NULL afterwards.
    active_version_id = Column(String(36), nullable=True, unique=True)
    workflow_type = Column(String(64), nullable=False, index=True)
    status = Column(
        workflow_status_enum,
        nullable=False,
        default=WorkflowStatus.DRAFT.value,
        index=True,
    )
    current_level = Column(Integer, nullable=False, default=1)
    revision_round = Column(Integer, nullable=False, default=1)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    lock_version = Column(Integer, nullable=False)

    version = relationship("DeliverableVersionModel")
    levels = relationship(
        "ApprovalLevelModel",
        back_populates="workflow",
        order_by="ApprovalLevelModel.level_number",
        cascade="all, delete-orphan",
    )
    revision_rounds = relationship(
        "RevisionRoundModel",
        back_populates="workflow",
        order_by="RevisionRoundModel.round_number",
        cascade="all, delete-orphan",
    )
    checklist = relationship(
        "QualityChecklistModel",
        back_populates="workflow",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    __table_args__ = (
        Index("ix_review_workflows_status_type", "status", "workflow_type"),
    )

    def level_by_number(self, level_number: int) -> "ApprovalLevelModel":
        for level in self.levels:
            if level.level_number == level_number:
                return level
        raise LookupError(f"Workflow {self.id} has no level {level_number}")

    def to_dict(self, nested: bool = True) -> Dict[str, Any]:
        """Convert model to dictionary, including levels, rounds and checklist."""
        data = {
            "id": self.id,
            "version_id": self.version_id,
            "workflow_type": self.workflow_type,
            "status": self.status,
            "current_level": self.current_level,
            "revision_round": self.revision_round,
            "cancel_reason": self.cancel_reason,
            "created_at": isoformat(self.created_at),
            "updated_at": isoformat(self.updated_at),
            "lock_version": self.lock_version,
        }
        if nested:
            data["version"] = self.version.to_dict() if self.version else None
            data["levels"] = [level.to_dict() for level in self.levels]
            data["revision_rounds"] = [r.to_dict() for r in self.revision_rounds]
            data["checklist"] = self.checklist.to_dict() if self.checklist else None
        return data


class ApprovalLevelModel(Base):
    """One sequential approval stage within a workflow."""

    __tablename__ = "approval_levels"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    workflow_id = Column(
        String(36), ForeignKey("review_workflows.id"), nullable=False, index=True
    )
    level_number = Column(Integer, nullable=False)
    name = Column(String(128), nullable=False)
    description = Column(Text, nullable=True)
    approver_type = Column(approver_kind_enum, nullable=False)
    approver_ref = Column(String(256), nullable=True)
    # NULL = every assigned approver must approve
    min_approvers = Column(Integer, nullable=True)
    can_delegate = Column(Boolean, nullable=False, default=False)
    deadline_offset_hours = Column(Integer, nullable=True)
    deadline = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        level_status_enum, nullable=False, default=LevelStatus.PENDING.value
    )
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    lock_version = Column(Integer, nullable=False)

    workflow = relationship("ReviewWorkflowModel", back_populates="levels")
    approvers = relationship(
        "LevelApproverModel",
        back_populates="level",
        order_by="LevelApproverModel.position",
        cascade="all, delete-orphan",
    )
    comments = relationship(
        "LevelCommentModel",
        back_populates="level",
        order_by="[LevelCommentModel.created_at, LevelCommentModel.id]",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    __table_args__ = (
        UniqueConstraint("workflow_id", "level_number", name="uq_level_number"),
    )

    @property
    def required_approvals(self) -> int:
        assigned = len(self.approvers)
        if self.min_approvers is None:
            return assigned
        return min(self.min_approvers, assigned)

    @property
    def approved_count(self) -> int:
        return sum(1 for a in self.approvers if a.status == ApproverStatus.APPROVED)

    @property
    def quorum_met(self) -> bool:
        return self.approved_count >= self.required_approvals

    def approver_for(self, approver_id: str) -> "LevelApproverModel":
        for approver in self.approvers:
            if approver.approver_id == approver_id:
                return approver
        raise LookupError(approver_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "level_number": self.level_number,
            "name": self.name,
            "description": self.description,
            "approver_type": self.approver_type,
            "approver_ref": self.approver_ref,
            "min_approvers": self.min_approvers,
            "required_approvals": self.required_approvals,
            "can_delegate": self.can_delegate,
            "deadline_offset_hours": self.deadline_offset_hours,
            "deadline": isoformat(self.deadline),
            "status": self.status,
            "started_at": isoformat(self.started_at),
            "completed_at": isoformat(self.completed_at),
            "approvers": [a.to_dict() for a in self.approvers],
            "comments": [c.to_dict() for c in self.comments],
        }


class LevelApproverModel(Base):
    """An approver slot assigned to a level."""

    __tablename__ = "level_approvers"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    level_id = Column(
        String(36), ForeignKey("approval_levels.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    approver_id = Column(String(128), nullable=False, index=True)
    approver_name = Column(String(256), nullable=False)
    approver_email = Column(String(320), nullable=True)
    approver_kind = Column(approver_kind_enum, nullable=False)
    status = Column(
        approver_status_enum, nullable=False, default=ApproverStatus.PENDING.value
    )
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    comments = Column(Text, nullable=True)
    delegated_from = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    lock_version = Column(Integer, nullable=False)

    level = relationship("ApprovalLevelModel", back_populates="approvers")

    __mapper_args__ = {"version_id_col": lock_version}

    __table_args__ = (
        UniqueConstraint("level_id", "approver_id", name="uq_level_approver"),
    )

    def reset(self) -> None:
        self.status = ApproverStatus.PENDING.value
        self.approved_at = None
        self.rejected_at = None
        self.comments = None
        # Always issue the UPDATE: a slot that still reads pending here may
        # have been decided by a concurrent writer.
        flag_modified(self, "status")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level_id": self.level_id,
            "approver_id": self.approver_id,
            "approver_name": self.approver_name,
            "approver_email": self.approver_email,
            "approver_kind": self.approver_kind,
            "status": self.status,
            "approved_at": isoformat(self.approved_at),
            "rejected_at": isoformat(self.rejected_at),
            "comments": self.comments,
            "delegated_from": self.delegated_from,
        }


class LevelCommentModel(Base):
    """Free-text entry attached to a level. Append-only."""

    __tablename__ = "level_comments"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    level_id = Column(
        String(36), ForeignKey("approval_levels.id"), nullable=False, index=True
    )
    workflow_id = Column(
        String(36), ForeignKey("review_workflows.id"), nullable=False, index=True
    )
    comment_type = Column(
        comment_type_enum, nullable=False, default=CommentType.GENERAL.value
    )
    content = Column(Text, nullable=False)
    author_name = Column(String(256), nullable=False)
    author_id = Column(String(128), nullable=True)
    round_number = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    level = relationship("ApprovalLevelModel", back_populates="comments")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "level_id": self.level_id,
            "workflow_id": self.workflow_id,
            "comment_type": self.comment_type,
            "content": self.content,
            "author_name": self.author_name,
            "author_id": self.author_id,
            "round_number": self.round_number,
            "created_at": isoformat(self.created_at),
        }


class RevisionRoundModel(Base):
    """Historical record of one revision cycle. Never mutated."""

    __tablename__ = "revision_rounds"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    workflow_id = Column(
        String(36), ForeignKey("review_workflows.id"), nullable=False, index=True
    )
    round_number = Column(Integer, nullable=False)
    status = Column(
        revision_round_status_enum,
        nullable=False,
        default=RevisionRoundStatus.REQUESTED.value,
    )
    requested_by = Column(String(256), nullable=False)
    requested_by_id = Column(String(128), nullable=True)
    reason = Column(Text, nullable=True)
    level_number = Column(Integer, nullable=False)
    version_id = Column(String(36), nullable=False)
    # Approver decisions of every level as they stood before the reset
    snapshot = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)

    workflow = relationship("ReviewWorkflowModel", back_populates="revision_rounds")

    __table_args__ = (
        UniqueConstraint("workflow_id", "round_number", name="uq_revision_round"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "round_number": self.round_number,
            "status": self.status,
            "requested_by": self.requested_by,
            "requested_by_id": self.requested_by_id,
            "reason": self.reason,
            "level_number": self.level_number,
            "version_id": self.version_id,
            "snapshot": self.snapshot,
            "created_at": isoformat(self.created_at),
        }


class QualityChecklistModel(Base):
    """Quality gate tied to a workflow."""

    __tablename__ = "quality_checklists"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    workflow_id = Column(
        String(36), ForeignKey("review_workflows.id"), nullable=False, unique=True
    )
    template_id = Column(String(128), nullable=True)
    status = Column(
        checklist_status_enum, nullable=False, default=ChecklistStatus.PENDING.value
    )
    overall_score = Column(Float, nullable=False, default=0.0)
    passed_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    lock_version = Column(Integer, nullable=False)

    workflow = relationship("ReviewWorkflowModel", back_populates="checklist")
    items = relationship(
        "QualityCheckItemModel",
        back_populates="checklist",
        order_by="QualityCheckItemModel.position",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workflow_id": self.workflow_id,
            "template_id": self.template_id,
            "status": self.status,
            "overall_score": self.overall_score,
            "passed_at": isoformat(self.passed_at),
            "failed_at": isoformat(self.failed_at),
            "items": [item.to_dict() for item in self.items],
        }


class QualityCheckItemModel(Base):
    """One categorized check of a quality checklist."""

    __tablename__ = "quality_check_items"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    checklist_id = Column(
        String(36), ForeignKey("quality_checklists.id"), nullable=False, index=True
    )
    position = Column(Integer, nullable=False, default=0)
    category = Column(String(64), nullable=False, index=True)
    title = Column(String(256), nullable=False)
    description = Column(Text, nullable=True)
    is_required = Column(Boolean, nullable=False, default=True)
    status = Column(
        checklist_item_status_enum,
        nullable=False,
        default=ChecklistItemStatus.PENDING.value,
    )
    score = Column(Integer, nullable=True)
    notes = Column(Text, nullable=True)
    checked_by = Column(String(256), nullable=True)
    checked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    lock_version = Column(Integer, nullable=False)

    checklist = relationship("QualityChecklistModel", back_populates="items")

    __mapper_args__ = {"version_id_col": lock_version}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "checklist_id": self.checklist_id,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "is_required": self.is_required,
            "status": self.status,
            "score": self.score,
            "notes": self.notes,
            "checked_by": self.checked_by,
            "checked_at": isoformat(self.checked_at),
        }


class VersionCommentModel(Base):
    """Threaded discussion on a version, independent of any workflow.

    Content is fixed once written; only the resolution fields change.
    """

    __tablename__ = "version_comments"

    id = Column(String(36), primary_key=True, default=generate_ulid)
    version_id = Column(
        String(36), ForeignKey("deliverable_versions.id"), nullable=False, index=True
    )
    parent_comment_id = Column(
        String(36), ForeignKey("version_comments.id"), nullable=True, index=True
    )
    comment_type = Column(
        comment_type_enum, nullable=False, default=CommentType.GENERAL.value
    )
    content = Column(Text, nullable=False)
    # e.g. a page number or timecode within the version's file
    file_reference = Column(String(512), nullable=True)
    attachments = Column(JSON, nullable=False, default=list)
    author_type = Column(
        comment_author_type_enum,
        nullable=False,
        default=CommentAuthorType.EMPLOYEE.value,
    )
    author_name = Column(String(256), nullable=False)
    author_id = Column(String(128), nullable=True)
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    resolved_by = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utc_now)
    lock_version = Column(Integer, nullable=False)

    version = relationship("DeliverableVersionModel")
    parent = relationship(
        "VersionCommentModel", remote_side=[id], back_populates="replies"
    )
    replies = relationship(
        "VersionCommentModel",
        back_populates="parent",
        order_by="[VersionCommentModel.created_at, VersionCommentModel.id]",
    )

    __mapper_args__ = {"version_id_col": lock_version}

    RESOLUTION_FIELDS = ("is_resolved", "resolved_at", "resolved_by", "lock_version")

    def to_dict(self, with_replies: bool = True) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "version_id": self.version_id,
            "parent_comment_id": self.parent_comment_id,
            "comment_type": self.comment_type,
            "content": self.content,
            "file_reference": self.file_reference,
            "attachments": self.attachments or [],
            "author_type": self.author_type,
            "author_name": self.author_name,
            "author_id": self.author_id,
            "is_resolved": self.is_resolved,
            "resolved_at": isoformat(self.resolved_at),
            "resolved_by": self.resolved_by,
            "created_at": isoformat(self.created_at),
        }
        if with_replies:
            data["replies"] = [reply.to_dict() for reply in self.replies]
        return data


def _reject_column_changes(mapper, connection, target) -> None:
    state = inspect(target)
    for prop in mapper.column_attrs:
        if state.attrs[prop.key].history.has_changes():
            raise ImmutabilityError(type(target).__name__, str(target.id))


for _append_only in (DeliverableVersionModel, RevisionRoundModel, LevelCommentModel):
    event.listen(_append_only, "before_update", _reject_column_changes)


def _reject_content_changes(mapper, connection, target) -> None:
    state = inspect(target)
    for prop in mapper.column_attrs:
        if prop.key in target.RESOLUTION_FIELDS:
            continue
        if state.attrs[prop.key].history.has_changes():
            raise ImmutabilityError(type(target).__name__, str(target.id))


event.listen(VersionCommentModel, "before_update", _reject_content_changes)
