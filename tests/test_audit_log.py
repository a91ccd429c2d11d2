"""
Tests for the AuditLog model and the audit trail service.

Verifies:
- AuditLogModel structure and to_dict()
- AuditTrail logging helpers (record, create, status_change)
- Entries commit together with the transition they describe
- Entries cannot be modified
"""

from datetime import datetime, timezone

import pytest

from deliverable_review.db.audit_models import AuditLogModel
from deliverable_review.db.audit_service import AuditTrail
from deliverable_review.review.enums import ActorKind, Decision
from deliverable_review.review.errors import ImmutabilityError, UnauthorizedApprover
from deliverable_review.review.primitives import Actor


class TestAuditLogModel:
    """Tests for AuditLogModel structure."""

    def test_model_has_required_columns(self):
        columns = {c.name for c in AuditLogModel.__table__.columns}
        required = {
            "id", "event_id", "ts", "actor_kind", "actor_id", "action",
            "entity_kind", "entity_id", "workflow_id", "level_id",
            "before", "after", "note",
        }
        assert required.issubset(columns)

    def test_to_dict_output(self):
        entry = AuditLogModel(
            id=7,
            event_id="evt-1",
            ts=datetime(2026, 3, 2, 9, 30, 0, tzinfo=timezone.utc),
            actor_kind="human",
            actor_id="pm-1",
            action="approver.approved",
            entity_kind="Approver",
            entity_id="slot-1",
            workflow_id="wf-1",
            level_id="lvl-1",
            before={"status": "pending"},
            after={"status": "approved"},
            note="Looks good",
        )

        result = entry.to_dict()

        assert result["id"] == 7
        assert result["ts"] == "2026-03-02T09:30:00+00:00"
        assert result["action"] == "approver.approved"
        assert result["after"] == {"status": "approved"}
        assert result["level_id"] == "lvl-1"


class TestAuditTrail:
    """Tests for the logging helpers."""

    def test_record_defaults_to_system_actor(self, db_session):
        audit = AuditTrail(db_session)

        entry = audit.record("workflow.created", "Workflow", "wf-1", workflow_id="wf-1")
        db_session.commit()

        assert entry.id is not None
        assert entry.event_id
        assert entry.actor_kind == ActorKind.SYSTEM.value
        assert entry.actor_id == "review-engine"

    def test_log_create(self, db_session):
        audit = AuditTrail(db_session)
        actor = Actor(actor_id="pm-1", display="Paula PM")

        entry = audit.log_create("Deliverable", "d-1", {"title": "Poster"}, actor=actor)

        assert entry.action == "deliverable.created"
        assert entry.actor_kind == "human"
        assert entry.after == {"title": "Poster"}
        assert entry.before is None

    def test_log_status_change(self, db_session):
        audit = AuditTrail(db_session)

        entry = audit.log_status_change(
            "Level", "lvl-1", "in_progress", "approved", workflow_id="wf-1", level_id="lvl-1"
        )

        assert entry.action == "level.approved"
        assert entry.before == {"status": "in_progress"}
        assert entry.after == {"status": "approved"}
        assert entry.note == "Status changed: in_progress -> approved"

    def test_query_filters_and_order(self, db_session):
        audit = AuditTrail(db_session)
        for action, level_id in [("a.one", "l1"), ("a.two", "l2"), ("a.one", "l2")]:
            audit.record(action, "Thing", "t", workflow_id="wf-1", level_id=level_id)
        audit.record("a.one", "Thing", "t", workflow_id="wf-2")
        db_session.commit()

        assert [e.action for e in audit.query("wf-1")] == ["a.one", "a.two", "a.one"]
        assert len(audit.query("wf-1", level_id="l2")) == 2
        assert len(audit.query("wf-1", action="a.one")) == 2
        assert len(audit.query("wf-1", limit=1)) == 1

    def test_entries_are_immutable(self, db_session):
        entry = AuditTrail(db_session).record("a.one", "Thing", "t")
        db_session.commit()

        entry.note = "rewritten"
        with pytest.raises(ImmutabilityError):
            db_session.commit()
        db_session.rollback()


class TestWorkflowAuditTrail:
    """The engine writes one entry per change, in transaction order."""

    def test_start_and_decisions(self, review_engine, version):
        wf = review_engine.create_workflow(version.id, "two-level")
        review_engine.start_review(wf.id)
        level_id = wf.levels[0].id
        review_engine.record_approver_decision(wf.id, level_id, "alice", Decision.APPROVE)
        review_engine.record_approver_decision(wf.id, level_id, "bob", Decision.APPROVE)

        trail = review_engine.get_audit_trail(wf.id)
        actions = [e.action for e in trail]

        assert actions == [
            "workflow.created",
            "workflow.in_review",
            "level.activated",
            "approver.approved",
            "approver.approved",
            "level.approved",
            "level.activated",
        ]
        assert [e.id for e in trail] == sorted(e.id for e in trail)
        decisions = [e for e in trail if e.action == "approver.approved"]
        assert [e.actor_id for e in decisions] == ["alice", "bob"]
        assert decisions[0].level_id == level_id

    def test_failed_decision_leaves_no_entry(self, review_engine, version):
        wf = review_engine.create_workflow(version.id, "two-level")
        review_engine.start_review(wf.id)
        before = len(review_engine.get_audit_trail(wf.id))

        with pytest.raises(UnauthorizedApprover):
            review_engine.record_approver_decision(
                wf.id, wf.levels[0].id, "mallory", Decision.APPROVE
            )

        assert len(review_engine.get_audit_trail(wf.id)) == before

    def test_rejection_records_revision(self, review_engine, version):
        wf = review_engine.create_workflow(version.id, "two-level")
        review_engine.start_review(wf.id)

        review_engine.record_approver_decision(
            wf.id, wf.levels[0].id, "bob", Decision.REJECT, comment="Off brand"
        )

        actions = [e.action for e in review_engine.get_audit_trail(wf.id)]
        assert actions[-5:] == [
            "comment.added",
            "approver.rejected",
            "level.rejected",
            "workflow.revision_requested",
            "level.activated",
        ]
