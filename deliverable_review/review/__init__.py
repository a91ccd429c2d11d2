"""
Review workflow domain: levels, approvers, revision rounds and checklists.
"""

from .enums import (
    ApproverKind,
    ApproverStatus,
    ChecklistItemStatus,
    ChecklistStatus,
    CommentType,
    Decision,
    LevelStatus,
    WorkflowStatus,
)
from .errors import (
    ApproverResolutionError,
    ChecklistIncomplete,
    ConcurrentModification,
    ImmutabilityError,
    InvalidTransition,
    NotFound,
    ReviewError,
    UnauthorizedApprover,
    UnknownWorkflowType,
    VersionAlreadyHasActiveWorkflow,
)
from .primitives import Actor, ApproverIdentity

__all__ = [
    "Actor",
    "ApproverIdentity",
    "ApproverKind",
    "ApproverResolutionError",
    "ApproverStatus",
    "ChecklistIncomplete",
    "ChecklistItemStatus",
    "ChecklistStatus",
    "CommentType",
    "ConcurrentModification",
    "Decision",
    "ImmutabilityError",
    "InvalidTransition",
    "LevelStatus",
    "NotFound",
    "ReviewError",
    "UnauthorizedApprover",
    "UnknownWorkflowType",
    "VersionAlreadyHasActiveWorkflow",
    "WorkflowStatus",
]
