"""
Canonical enums for the review workflow.

These enums define the allowed values for status and kind fields across
workflow objects. The database stores their string values.
"""

from enum import Enum


class WorkflowStatus(str, Enum):
    """Lifecycle of a review workflow."""

    DRAFT = "draft"
    IN_REVIEW = "in_review"
    REVISION_REQUESTED = "revision_requested"
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.APPROVED, WorkflowStatus.REJECTED)


class LevelStatus(str, Enum):
    """Status of a single approval level."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    APPROVED = "approved"
    REJECTED = "rejected"


class ApproverStatus(str, Enum):
    """Status of an approver slot within a level."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Decision(str, Enum):
    """Decision an approver can submit."""

    APPROVE = "approve"
    REJECT = "reject"


class ApproverKind(str, Enum):
    """How a level names its approvers."""

    USER = "user"
    ROLE = "role"
    EXTERNAL = "external"


class CommentType(str, Enum):
    """Kinds of comments attached to a level."""

    GENERAL = "general"
    FEEDBACK = "feedback"
    APPROVAL_NOTE = "approval_note"
    REVISION_REQUEST = "revision_request"
    QUALITY_ISSUE = "quality_issue"


class CommentAuthorType(str, Enum):
    """Who wrote a version comment."""

    EMPLOYEE = "employee"
    CLIENT = "client"


class RevisionRoundStatus(str, Enum):
    """Status recorded on a revision round when it is opened."""

    REQUESTED = "requested"


class ChecklistStatus(str, Enum):
    """Aggregate status of a quality checklist."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


class ChecklistItemStatus(str, Enum):
    """Status of an individual checklist item."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    NOT_APPLICABLE = "n_a"


class ActorKind(str, Enum):
    """Types of actors that can change workflow state."""

    HUMAN = "human"
    SYSTEM = "system"


class ResubmissionPolicy(str, Enum):
    """What a resubmission after revision must carry."""

    ALLOW_SAME_VERSION = "allow_same_version"
    REQUIRE_CHANGE = "require_change"
    REQUIRE_NEW_VERSION = "require_new_version"


class RevisionReentry(str, Enum):
    """Which level a workflow resumes at after a revision request."""

    FIRST_LEVEL = "first_level"
    REJECTED_LEVEL = "rejected_level"
