"""Test configuration and fixtures."""

from typing import Generator

import pytest
from sqlalchemy.orm import Session, sessionmaker

from deliverable_review.db import audit_models, models  # noqa: F401
from deliverable_review.db.base import Base, create_db_engine
from deliverable_review.policy.resubmission_gate import PolicyConfig
from deliverable_review.review.approvers import RoleDirectory, UserApprover
from deliverable_review.review.engine import WorkflowEngine
from deliverable_review.review.enums import RevisionReentry
from deliverable_review.review.events import EventPublisher, RecordingSubscriber
from deliverable_review.review.primitives import ApproverIdentity
from deliverable_review.review.schemas import DeliverableCreate, VersionCreate
from deliverable_review.review.templates import (
    LevelDefinition,
    TemplateRegistry,
    WorkflowTemplate,
)
from deliverable_review.review.versions import VersionStore


@pytest.fixture
def db_engine():
    """Fresh in-memory database for each test."""
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    session = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)()
    yield session
    session.close()


@pytest.fixture
def roles() -> RoleDirectory:
    return RoleDirectory(
        {
            "project_manager": [ApproverIdentity(approver_id="pm-1", name="Paula PM")],
            "quality_lead": [ApproverIdentity(approver_id="qa-1", name="Quinn QA")],
            "client": [
                ApproverIdentity(
                    approver_id="client-1", name="Client Contact", email="c@example.com"
                )
            ],
            "reviewers": [
                ApproverIdentity(approver_id="rev-1", name="Reviewer One"),
                ApproverIdentity(approver_id="rev-2", name="Reviewer Two"),
                ApproverIdentity(approver_id="rev-3", name="Reviewer Three"),
            ],
        }
    )


@pytest.fixture
def registry() -> TemplateRegistry:
    """Built-in templates plus small fixed ones used by the engine tests."""
    registry = TemplateRegistry()
    registry.register(
        WorkflowTemplate(
            workflow_type="two-level",
            levels=[
                LevelDefinition(
                    name="Internal Review",
                    approvers=[
                        UserApprover(approver_id="alice", name="Alice"),
                        UserApprover(approver_id="bob", name="Bob"),
                    ],
                ),
                LevelDefinition(
                    name="Client Approval",
                    approvers=[UserApprover(approver_id="carol", name="Carol")],
                ),
            ],
        )
    )
    registry.register(
        WorkflowTemplate(
            workflow_type="panel",
            levels=[
                LevelDefinition(
                    name="Panel",
                    approvers=[
                        UserApprover(approver_id="p1", name="Panelist 1"),
                        UserApprover(approver_id="p2", name="Panelist 2"),
                        UserApprover(approver_id="p3", name="Panelist 3"),
                    ],
                    min_approvers=2,
                ),
            ],
        )
    )
    return registry


@pytest.fixture
def publisher() -> EventPublisher:
    return EventPublisher()


@pytest.fixture
def recorder(publisher) -> RecordingSubscriber:
    recorder = RecordingSubscriber()
    publisher.subscribe(recorder)
    return recorder


def make_engine(db, registry, roles, publisher, **kwargs) -> WorkflowEngine:
    kwargs.setdefault("policy", PolicyConfig())
    kwargs.setdefault("reentry", RevisionReentry.FIRST_LEVEL)
    return WorkflowEngine(
        db, templates=registry, roles=roles, publisher=publisher, **kwargs
    )


@pytest.fixture
def review_engine(db_session, registry, roles, publisher) -> WorkflowEngine:
    return make_engine(db_session, registry, roles, publisher)


@pytest.fixture
def store(db_session) -> VersionStore:
    return VersionStore(db_session)


@pytest.fixture
def deliverable(store):
    return store.create_deliverable(
        DeliverableCreate(title="Spring campaign poster", type="design", project_id="prj-1")
    )


@pytest.fixture
def version(store, deliverable):
    return store.create_version(
        deliverable.id,
        VersionCreate(file_url="s3://bucket/poster-v1.pdf", change_log="First draft"),
    )


@pytest.fixture
def engine_factory(registry, roles, publisher):
    """Build further engines sharing templates, roles and publisher."""

    def factory(db, **kwargs) -> WorkflowEngine:
        return make_engine(db, registry, roles, publisher, **kwargs)

    return factory
