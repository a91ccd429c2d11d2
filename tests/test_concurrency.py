"""
Tests for optimistic concurrency between sessions.

Two sessions on one SQLite file stand in for two API workers. Each session
keeps its own identity map, so an object loaded in one session goes stale
when the other commits.
"""

import pytest
from sqlalchemy.orm import sessionmaker

from deliverable_review.db import audit_models, models  # noqa: F401
from deliverable_review.db.audit_models import AuditLogModel
from deliverable_review.db.base import Base, create_db_engine
from deliverable_review.review.checklist import ChecklistGate
from deliverable_review.review.enums import (
    ChecklistItemStatus,
    Decision,
    LevelStatus,
    WorkflowStatus,
)
from deliverable_review.review.errors import (
    ConcurrentModification,
    InvalidTransition,
    VersionAlreadyHasActiveWorkflow,
)
from deliverable_review.review.schemas import DeliverableCreate, VersionCreate
from deliverable_review.review.templates import ChecklistItemDefinition
from deliverable_review.review.versions import VersionStore


@pytest.fixture
def file_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'review.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def sessions(file_engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=file_engine)
    s1, s2 = factory(), factory()
    yield s1, s2
    s1.close()
    s2.close()


@pytest.fixture
def shared_version(sessions):
    s1, _ = sessions
    store = VersionStore(s1)
    deliverable = store.create_deliverable(DeliverableCreate(title="Brochure", type="document"))
    return store.create_version(deliverable.id, VersionCreate(change_log="v1"))


def _preload(engine, workflow_id):
    """Load the workflow graph into the engine's session."""
    workflow = engine.get_workflow_by_id(workflow_id)
    workflow.to_dict()
    return workflow


def _level_approved_entries(session, level_id):
    return (
        session.query(AuditLogModel)
        .filter(AuditLogModel.action == "level.approved", AuditLogModel.level_id == level_id)
        .count()
    )


class TestConcurrentDecisions:
    """Racing approvals on the same level."""

    def test_same_slot_race_has_one_winner(self, sessions, shared_version, engine_factory):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(shared_version.id, "two-level")
        e1.start_review(wf.id)
        level_id = wf.levels[0].id
        e1.record_approver_decision(wf.id, level_id, "alice", Decision.APPROVE)

        stale = _preload(e2, wf.id)
        assert stale.levels[0].approver_for("bob").status == "pending"

        e1.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)

        with pytest.raises(ConcurrentModification):
            e2.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)

        # The rollback expired the stale view; a retry sees the real state.
        with pytest.raises(InvalidTransition):
            e2.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)

        fresh = e2.get_workflow_by_id(wf.id)
        assert fresh.current_level == 2
        assert fresh.levels[0].status == LevelStatus.APPROVED
        assert fresh.levels[1].status == LevelStatus.IN_PROGRESS
        assert _level_approved_entries(s2, level_id) == 1

    def test_different_slots_both_succeed_and_level_completes_once(
        self, sessions, shared_version, engine_factory
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(shared_version.id, "panel")
        e1.start_review(wf.id)
        level_id = wf.levels[0].id
        _preload(e2, wf.id)

        e1.record_approver_decision(wf.id, level_id, "p1", Decision.APPROVE)
        outcome = e2.record_approver_decision(wf.id, level_id, "p2", Decision.APPROVE)

        assert outcome.workflow.status == WorkflowStatus.APPROVED
        s1.expire_all()
        workflow = e1.get_workflow_by_id(wf.id)
        assert workflow.status == WorkflowStatus.APPROVED
        assert workflow.levels[0].approved_count == 2
        assert _level_approved_entries(s1, level_id) == 1

    def test_rejection_resets_a_slot_approved_concurrently(
        self, sessions, shared_version, engine_factory
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(shared_version.id, "two-level")
        e1.start_review(wf.id)
        level_id = wf.levels[0].id
        stale = _preload(e2, wf.id)
        assert stale.levels[0].approver_for("alice").status == "pending"

        e1.record_approver_decision(wf.id, level_id, "alice", Decision.APPROVE)

        # The rejecting writer never saw alice approve, so its reset conflicts.
        with pytest.raises(ConcurrentModification):
            e2.record_approver_decision(
                wf.id, level_id, "bob", Decision.REJECT, comment="Missing asset"
            )

        outcome = e2.record_approver_decision(
            wf.id, level_id, "bob", Decision.REJECT, comment="Missing asset"
        )

        assert outcome.workflow.status == WorkflowStatus.REVISION_REQUESTED
        assert outcome.workflow.revision_round == 2
        s1.expire_all()
        workflow = e1.get_workflow_by_id(wf.id)
        assert [(a.approver_id, a.status) for a in workflow.levels[0].approvers] == [
            ("alice", "pending"),
            ("bob", "pending"),
        ]
        snapshot = workflow.revision_rounds[0].snapshot[0]["approvers"]
        assert [a["status"] for a in snapshot] == ["approved", "rejected"]

    def test_stale_cancel_is_refused(
        self, sessions, shared_version, engine_factory
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(shared_version.id, "two-level")
        e1.start_review(wf.id)
        level_id = wf.levels[0].id
        stale = _preload(e2, wf.id)  # noqa: F841 - keep the stale graph alive

        e1.record_approver_decision(wf.id, level_id, "alice", Decision.APPROVE)
        e1.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)

        with pytest.raises(ConcurrentModification):
            e2.cancel_workflow(wf.id, "stale cancel")

        s1.expire_all()
        assert e1.get_workflow_by_id(wf.id).status == WorkflowStatus.IN_REVIEW


class TestConcurrentCreation:
    def test_unique_active_version_backstops_the_check(
        self, sessions, shared_version, engine_factory, monkeypatch
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        e1.create_workflow(shared_version.id, "two-level")

        # Simulate the second writer passing the pre-check before the first committed.
        monkeypatch.setattr(e2, "_active_workflow_for", lambda version_id: None)

        with pytest.raises(VersionAlreadyHasActiveWorkflow):
            e2.create_workflow(shared_version.id, "two-level")

    def test_racing_version_numbers(self, sessions, shared_version, monkeypatch):
        s1, s2 = sessions
        store1, store2 = VersionStore(s1), VersionStore(s2)
        deliverable_id = shared_version.deliverable_id

        # Both writers compute the next number from the same latest version.
        latest = store2.latest_version(deliverable_id)
        store1.create_version(deliverable_id, VersionCreate(change_log="v2"))
        monkeypatch.setattr(store2, "latest_version", lambda _id: latest)

        with pytest.raises(ConcurrentModification) as exc:
            store2.create_version(deliverable_id, VersionCreate(change_log="also v2"))

        assert exc.value.context["latest_version_number"] == 2


class TestConcurrentChecklistEdits:
    def test_stale_checklist_update_conflicts(self, sessions, shared_version, engine_factory):
        s1, s2 = sessions
        e1 = engine_factory(s1)
        wf = e1.create_workflow(
            shared_version.id,
            "two-level",
            checklist_items=[
                ChecklistItemDefinition(category="content", title="Copy"),
                ChecklistItemDefinition(category="branding", title="Logo"),
            ],
        )
        checklist_id = wf.checklist.id
        first, second = [item.id for item in wf.checklist.items]

        gate1, gate2 = ChecklistGate(s1), ChecklistGate(s2)
        stale = gate2.get_checklist(checklist_id)
        stale.to_dict()

        gate1.set_item_status(first, ChecklistItemStatus.PASSED, "qa-1")

        with pytest.raises(ConcurrentModification):
            gate2.set_item_status(second, ChecklistItemStatus.PASSED, "qa-2")

        checklist = gate2.set_item_status(second, ChecklistItemStatus.PASSED, "qa-2")
        assert checklist.status == "passed"
        assert checklist.overall_score == 1.0

    def test_item_failed_during_final_approval_blocks_it(
        self, sessions, shared_version, engine_factory
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(
            shared_version.id,
            "two-level",
            checklist_items=[ChecklistItemDefinition(category="technical", title="Captions")],
        )
        item_id = wf.checklist.items[0].id
        gate1 = ChecklistGate(s1)
        gate1.set_item_status(item_id, ChecklistItemStatus.PASSED, "qa-1")
        e1.start_review(wf.id)
        first = wf.levels[0].id
        e1.record_approver_decision(wf.id, first, "alice", Decision.APPROVE)
        e1.record_approver_decision(wf.id, first, "bob", Decision.APPROVE)
        final_id = wf.levels[1].id

        stale = _preload(e2, wf.id)
        assert stale.checklist.status == "passed"

        gate1.set_item_status(item_id, ChecklistItemStatus.FAILED, "qa-1", notes="No captions")

        with pytest.raises(ConcurrentModification):
            e2.record_approver_decision(wf.id, final_id, "carol", Decision.APPROVE)

        outcome = e2.record_approver_decision(wf.id, final_id, "carol", Decision.APPROVE)

        assert outcome.workflow.status == WorkflowStatus.IN_REVIEW
        assert outcome.checklist_incomplete is not None
        s1.expire_all()
        workflow = e1.get_workflow_by_id(wf.id)
        assert workflow.status == WorkflowStatus.IN_REVIEW
        assert workflow.checklist.status == "failed"

    def test_stale_item_edit_after_final_approval_is_refused(
        self, sessions, shared_version, engine_factory
    ):
        s1, s2 = sessions
        e1 = engine_factory(s1)
        wf = e1.create_workflow(
            shared_version.id,
            "two-level",
            checklist_items=[ChecklistItemDefinition(category="technical", title="Captions")],
        )
        checklist_id = wf.checklist.id
        item_id = wf.checklist.items[0].id
        ChecklistGate(s1).set_item_status(item_id, ChecklistItemStatus.PASSED, "qa-1")
        e1.start_review(wf.id)
        e1.record_approver_decision(wf.id, wf.levels[0].id, "alice", Decision.APPROVE)
        e1.record_approver_decision(wf.id, wf.levels[0].id, "bob", Decision.APPROVE)

        gate2 = ChecklistGate(s2)
        stale = gate2.get_checklist(checklist_id)
        stale.to_dict()
        assert stale.workflow.status == "in_review"

        outcome = e1.record_approver_decision(wf.id, wf.levels[1].id, "carol", Decision.APPROVE)
        assert outcome.workflow.status == WorkflowStatus.APPROVED

        with pytest.raises(ConcurrentModification):
            gate2.set_item_status(item_id, ChecklistItemStatus.FAILED, "qa-2")

        # Fresh state: the workflow is approved and its checklist is closed.
        with pytest.raises(InvalidTransition):
            gate2.set_item_status(item_id, ChecklistItemStatus.FAILED, "qa-2")
        assert gate2.get_checklist(checklist_id).status == "passed"


class TestSettleRecovery:
    def test_unsettled_level_is_completed_by_complete_review(
        self, sessions, shared_version, engine_factory, monkeypatch
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(shared_version.id, "two-level")
        e1.start_review(wf.id)
        level_id = wf.levels[0].id
        stale = _preload(e2, wf.id)  # noqa: F841 - keep the stale graph alive

        e1.record_approver_decision(wf.id, level_id, "alice", Decision.APPROVE)

        def worker_stopped(*args, **kwargs):
            raise RuntimeError("worker stopped before settling")

        # bob's decision commits from a view without alice's; settling then dies.
        monkeypatch.setattr(e2, "_settle_level", worker_stopped)
        with pytest.raises(RuntimeError):
            e2.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)
        monkeypatch.undo()

        s1.expire_all()
        stuck = e1.get_workflow_by_id(wf.id)
        assert stuck.levels[0].status == LevelStatus.IN_PROGRESS
        assert stuck.levels[0].quorum_met
        with pytest.raises(InvalidTransition):
            e1.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)

        recovered = e1.complete_review(wf.id)

        assert recovered.status == WorkflowStatus.IN_REVIEW
        assert recovered.current_level == 2
        assert recovered.levels[0].status == LevelStatus.APPROVED
        assert recovered.levels[1].status == LevelStatus.IN_PROGRESS
        assert _level_approved_entries(s1, level_id) == 1

        outcome = e1.record_approver_decision(wf.id, wf.levels[1].id, "carol", Decision.APPROVE)
        assert outcome.workflow.status == WorkflowStatus.APPROVED

    def test_complete_review_approves_a_stalled_final_level(
        self, sessions, shared_version, engine_factory, monkeypatch
    ):
        s1, s2 = sessions
        e1, e2 = engine_factory(s1), engine_factory(s2)
        wf = e1.create_workflow(shared_version.id, "panel")
        e1.start_review(wf.id)
        level_id = wf.levels[0].id
        stale = _preload(e2, wf.id)  # noqa: F841 - keep the stale graph alive

        e1.record_approver_decision(wf.id, level_id, "p1", Decision.APPROVE)

        def worker_stopped(*args, **kwargs):
            raise RuntimeError("worker stopped before settling")

        monkeypatch.setattr(e2, "_settle_level", worker_stopped)
        with pytest.raises(RuntimeError):
            e2.record_approver_decision(wf.id, level_id, "p2", Decision.APPROVE)
        monkeypatch.undo()

        s1.expire_all()
        workflow = e1.complete_review(wf.id)

        assert workflow.status == WorkflowStatus.APPROVED
        assert workflow.levels[0].status == LevelStatus.APPROVED
