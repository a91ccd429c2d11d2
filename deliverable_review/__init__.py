"""
Deliverable Review

Revision and approval workflow engine for versioned project deliverables.
"""

import importlib.metadata

__version__ = importlib.metadata.version("deliverable-review")

from .review.engine import DecisionOutcome, ReviewRuntime, WorkflowEngine
from .review.events import Event, EventPublisher, EventTypes
from .review.templates import TemplateRegistry, WorkflowTemplates

__all__ = [
    "DecisionOutcome",
    "Event",
    "EventPublisher",
    "EventTypes",
    "ReviewRuntime",
    "TemplateRegistry",
    "WorkflowEngine",
    "WorkflowTemplates",
]
