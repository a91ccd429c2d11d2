"""
Policy gates for the review workflow.
"""

from .resubmission_gate import (
    PolicyConfig,
    PolicyError,
    ResubmissionContext,
    ResubmissionRequest,
    VersionRef,
    evaluate,
)

__all__ = [
    "PolicyConfig",
    "PolicyError",
    "ResubmissionContext",
    "ResubmissionRequest",
    "VersionRef",
    "evaluate",
]
