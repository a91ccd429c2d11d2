"""
Policy gate for resubmitting a workflow after a revision request.

This module implements a pure, testable gate that decides whether a
resubmission carries enough change to go back into review. It returns the
normalized request or raises a PolicyError with a stable error code.

Policies:
- allow_same_version: anything goes; the same version may be re-reviewed
- require_change (default): a newer version OR a non-empty change note
- require_new_version: a newer version of the same deliverable is mandatory

Version rules (whenever a new version is proposed):
- it must belong to the deliverable under review
- its version number must be higher than the version under review

Configuration:
- RESUBMISSION_POLICY: one of the policy names above

Normalization:
- change_note is trimmed; an all-whitespace note becomes None
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict

from deliverable_review.review.enums import ResubmissionPolicy


def _get_default_policy_config() -> "PolicyConfig":
    """Build the policy config from application settings."""
    from deliverable_review.config import get_settings

    return PolicyConfig(policy=ResubmissionPolicy(get_settings().resubmission_policy))


class PolicyConfig(BaseModel):
    """Configuration for policy evaluation."""

    policy: ResubmissionPolicy = ResubmissionPolicy.REQUIRE_CHANGE


class ResubmissionRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    new_version_id: Optional[str] = None
    change_note: Optional[str] = None


class VersionRef(BaseModel):
    version_id: str
    deliverable_id: str
    version_number: int


class ResubmissionContext(BaseModel):
    """What the gate needs to know about the versions involved."""

    current: VersionRef
    proposed: Optional[VersionRef] = None


class PolicyError(Exception):
    """
    Raised when a resubmission fails policy evaluation.

    Attributes:
        code: Stable error code for programmatic handling
        message: Human-readable error description
    """

    status_code = 422

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")

    def to_dict(self) -> dict:
        """Convert to dict for JSON serialization."""
        return {
            "error": "policy_violation",
            "code": self.code,
            "message": self.message,
        }


def _normalize_note(note: Optional[str]) -> Optional[str]:
    if note is None:
        return None
    note = note.strip()
    return note or None


def _validate_proposed_version(
    request: ResubmissionRequest, context: ResubmissionContext
) -> None:
    """Validate a newly bound version against the one under review."""
    if not request.new_version_id:
        return
    proposed = context.proposed
    if proposed is None or proposed.version_id != request.new_version_id:
        raise PolicyError(
            code="VERSION_UNKNOWN",
            message=f"Version '{request.new_version_id}' could not be resolved",
        )
    if proposed.deliverable_id != context.current.deliverable_id:
        raise PolicyError(
            code="VERSION_FOREIGN_DELIVERABLE",
            message=f"Version '{proposed.version_id}' belongs to deliverable "
            f"'{proposed.deliverable_id}', not '{context.current.deliverable_id}'",
        )
    if proposed.version_number <= context.current.version_number:
        raise PolicyError(
            code="VERSION_NOT_NEWER",
            message=f"Version {proposed.version_number} is not newer than "
            f"version {context.current.version_number} under review",
        )


def evaluate(
    request: ResubmissionRequest,
    context: ResubmissionContext,
    config: Optional[PolicyConfig] = None,
) -> ResubmissionRequest:
    """
    Evaluate a resubmission against policy rules and return a normalized copy.

    This is a pure function: no DB access, no FastAPI request objects.

    Args:
        request: What the submitter sent
        context: The version under review and the proposed version, if any
        config: Optional policy configuration. If not provided, reads
                RESUBMISSION_POLICY from settings.

    Returns:
        A new ResubmissionRequest with normalized values

    Raises:
        PolicyError: If the resubmission violates the policy
    """
    if config is None:
        config = _get_default_policy_config()

    _validate_proposed_version(request, context)

    note = _normalize_note(request.change_note)
    has_new_version = bool(request.new_version_id)

    if config.policy == ResubmissionPolicy.REQUIRE_NEW_VERSION and not has_new_version:
        raise PolicyError(
            code="NEW_VERSION_REQUIRED",
            message="Resubmission must bind a newer version of the deliverable",
        )
    if config.policy == ResubmissionPolicy.REQUIRE_CHANGE and not (
        has_new_version or note
    ):
        raise PolicyError(
            code="CHANGE_REQUIRED",
            message="Resubmission must bind a newer version or describe the "
            "changes in change_note",
        )

    return ResubmissionRequest(new_version_id=request.new_version_id, change_note=note)
