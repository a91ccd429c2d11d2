"""
Request and response models for the review API.
"""

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, constr, model_validator

from .approvers import ApproverSpec
from .enums import ChecklistItemStatus, CommentAuthorType, CommentType, Decision
from .primitives import Actor
from .templates import ChecklistItemDefinition


class DeliverableCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: constr(min_length=1, max_length=256)
    type: constr(min_length=1, max_length=64) = Field(
        ..., description="Deliverable kind, e.g. design, document, video"
    )
    project_id: Optional[constr(max_length=128)] = None


class VersionCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    file_url: Optional[constr(max_length=2000)] = Field(
        None, description="Opaque storage URL; defaults to the previous version's"
    )
    change_log: Optional[str] = None


class ChecklistAttach(BaseModel):
    """Either a registered template id or explicit items."""

    model_config = ConfigDict(extra="forbid")

    template_id: Optional[str] = None
    items: Optional[List[ChecklistItemDefinition]] = None

    @model_validator(mode="after")
    def _one_source(self) -> "ChecklistAttach":
        if bool(self.template_id) == bool(self.items):
            raise ValueError("Provide exactly one of template_id or items")
        return self


class WorkflowCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    version_id: constr(min_length=1)
    workflow_type: constr(min_length=1, max_length=64)
    approver_overrides: Optional[Dict[int, List[ApproverSpec]]] = Field(
        None, description="Level number -> approvers replacing the template's"
    )
    checklist: Optional[ChecklistAttach] = None
    actor: Optional[Actor] = None


class ActorRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actor: Optional[Actor] = None


class DecisionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approver_id: constr(min_length=1, max_length=128)
    decision: Decision
    comment: Optional[str] = None


class DelegationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    approver_id: constr(min_length=1, max_length=128)
    delegate_id: constr(min_length=1, max_length=128)
    delegate_name: constr(min_length=1, max_length=256)
    delegate_email: Optional[constr(max_length=320)] = None


class ResubmitRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_version_id: Optional[str] = None
    change_note: Optional[str] = None
    actor: Optional[Actor] = None


class CancelRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: constr(min_length=1)
    actor: Optional[Actor] = None


class CommentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    comment_type: CommentType = CommentType.GENERAL
    content: constr(min_length=1)
    author_name: constr(min_length=1, max_length=256)
    author_id: Optional[constr(max_length=128)] = None


class VersionCommentCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    comment_type: CommentType = CommentType.GENERAL
    content: constr(min_length=1)
    author_name: constr(min_length=1, max_length=256)
    author_id: Optional[constr(max_length=128)] = None
    author_type: CommentAuthorType = CommentAuthorType.EMPLOYEE
    file_reference: Optional[constr(max_length=512)] = Field(
        None, description="Where in the file the comment applies, e.g. page 3 or 00:42"
    )
    parent_comment_id: Optional[str] = None
    attachments: List[str] = Field(default_factory=list)


class VersionCommentResolve(BaseModel):
    model_config = ConfigDict(extra="forbid")

    resolved: bool
    resolved_by: constr(min_length=1, max_length=128)


class ChecklistItemUpdate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    status: ChecklistItemStatus
    checked_by: constr(min_length=1, max_length=256)
    notes: Optional[str] = None
    score: Optional[int] = Field(None, ge=0, le=100)


class DecisionResponse(BaseModel):
    """Outcome of a recorded decision."""

    workflow_id: str
    level_id: str
    approver_status: str
    level_status: str
    workflow_status: str
    current_level: int
    checklist_incomplete: Optional[dict] = None
    workflow: dict
