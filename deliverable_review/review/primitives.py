"""
Common primitives shared by the review workflow objects.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, constr
from ulid import ULID

from .enums import ActorKind


def generate_ulid() -> str:
    """Generate a ULID for object IDs.

    ULIDs are lexicographically sortable and globally unique.
    """
    return str(ULID())


def utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


class Actor(BaseModel):
    """Represents who performed a state change.

    Used for audit trails and attribution.
    """

    model_config = ConfigDict(extra="forbid")

    actor_kind: ActorKind = Field(
        default=ActorKind.HUMAN, description="Type of actor: human or system"
    )
    actor_id: constr(min_length=1, max_length=128) = Field(
        ..., description="Unique identifier for the actor"
    )
    display: Optional[constr(min_length=1, max_length=256)] = Field(
        None, description="Human-readable display name"
    )

    @property
    def label(self) -> str:
        return self.display or self.actor_id


SYSTEM_ACTOR = Actor(actor_kind=ActorKind.SYSTEM, actor_id="review-engine")


class ApproverIdentity(BaseModel):
    """A pre-resolved approver identity (id plus display name)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    approver_id: constr(min_length=1, max_length=128)
    name: constr(min_length=1, max_length=256)
    email: Optional[constr(max_length=320)] = None
