"""
Transition events emitted by the review engine.

Events are collected while an operation runs and handed to the
``EventPublisher`` only after the transaction commits. Subscribers run
synchronously in the caller's thread; a failing subscriber is logged and
never affects the committed transition or the other subscribers.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import structlog

from .primitives import generate_ulid, isoformat, utc_now

logger = structlog.get_logger()


class Event:
    """A workflow transition, as seen by notification collaborators."""

    def __init__(
        self,
        event_type: str,
        data: Dict[str, Any],
        source: str = "review-engine",
    ):
        self.id = generate_ulid()
        self.type = event_type
        self.source = source
        self.data = data
        self.created_at: datetime = utc_now()

    @property
    def workflow_id(self) -> Optional[str]:
        return self.data.get("workflow_id")

    def to_dict(self) -> Dict[str, Any]:
        """Convert the event to a dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "data": self.data,
            "created_at": isoformat(self.created_at),
        }

    def __str__(self) -> str:
        return f"Event(id={self.id}, type={self.type})"

    def __repr__(self) -> str:
        return self.__str__()


class EventTypes:
    """Event types emitted by the engine."""

    LEVEL_ACTIVATED = "level.activated"
    LEVEL_APPROVED = "level.approved"
    LEVEL_REJECTED = "level.rejected"

    WORKFLOW_REVIEW_STARTED = "workflow.review_started"
    WORKFLOW_REVISION_REQUESTED = "workflow.revision_requested"
    WORKFLOW_RESUBMITTED = "workflow.resubmitted"
    WORKFLOW_APPROVED = "workflow.approved"
    WORKFLOW_REJECTED = "workflow.rejected"


Subscriber = Callable[[Event], None]


class EventPublisher:
    """In-process fan-out of committed events to subscribers."""

    def __init__(self) -> None:
        self._subscribers: List[Subscriber] = []

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def publish(self, event: Event) -> None:
        for subscriber in list(self._subscribers):
            try:
                subscriber(event)
            except Exception:
                logger.exception(
                    "event_subscriber_failed",
                    event_id=event.id,
                    event_type=event.type,
                    workflow_id=event.workflow_id,
                )

    def publish_all(self, events: List[Event]) -> None:
        for event in events:
            self.publish(event)


class RecordingSubscriber:
    """Keeps every event it receives, in order."""

    def __init__(self) -> None:
        self.events: List[Event] = []

    def __call__(self, event: Event) -> None:
        self.events.append(event)

    @property
    def types(self) -> List[str]:
        return [event.type for event in self.events]

    def clear(self) -> None:
        self.events.clear()
