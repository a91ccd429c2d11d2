"""
Error taxonomy for the review workflow engine.

Every error carries a stable code, the HTTP status the API layer maps it to,
and the current state of the objects involved so that callers can decide
whether to re-read and retry.
"""

from typing import Any, Dict


class ReviewError(Exception):
    """Base class for all engine errors."""

    code = "REVIEW_ERROR"
    status_code = 400

    def __init__(self, message: str, **context: Any):
        self.message = message
        self.context = context
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "context": self.context,
        }


class NotFound(ReviewError):
    """Raised when a referenced object does not exist."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, object_type: str, object_id: str):
        super().__init__(
            f"{object_type} '{object_id}' not found",
            object_type=object_type,
            object_id=object_id,
        )


class InvalidTransition(ReviewError):
    """Action attempted on a workflow, level or approver in the wrong state."""

    code = "INVALID_TRANSITION"
    status_code = 409


class UnauthorizedApprover(InvalidTransition):
    """Decision submitted by an identity not assigned to the level."""

    code = "UNAUTHORIZED_APPROVER"
    status_code = 403


class ChecklistIncomplete(ReviewError):
    """Final approval attempted while required checklist items are open."""

    code = "CHECKLIST_INCOMPLETE"
    status_code = 409


class ConcurrentModification(ReviewError):
    """Optimistic concurrency check failed; re-read and retry."""

    code = "CONCURRENT_MODIFICATION"
    status_code = 409


class UnknownWorkflowType(ReviewError):
    """No template is registered for the requested workflow type."""

    code = "UNKNOWN_WORKFLOW_TYPE"
    status_code = 422

    def __init__(self, workflow_type: str, known: list):
        super().__init__(
            f"Unknown workflow type '{workflow_type}'",
            workflow_type=workflow_type,
            known_types=sorted(known),
        )


class VersionAlreadyHasActiveWorkflow(ReviewError):
    """The version is already bound to a non-terminal workflow."""

    code = "VERSION_HAS_ACTIVE_WORKFLOW"
    status_code = 409


class ApproverResolutionError(ReviewError):
    """A level's approver requirement resolved to no identities."""

    code = "APPROVER_RESOLUTION_FAILED"
    status_code = 422


class ImmutabilityError(ReviewError):
    """Raised when attempting to modify an immutable object."""

    code = "IMMUTABILITY_VIOLATION"
    status_code = 405

    def __init__(self, object_type: str, object_id: str):
        super().__init__(
            f"{object_type} objects are immutable. Cannot modify {object_id}.",
            object_type=object_type,
            object_id=object_id,
        )
