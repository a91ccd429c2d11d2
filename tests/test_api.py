"""
API tests for the review endpoints.

Drives a deliverable through the HTTP surface: versions, workflow creation,
decisions, revision and resubmission, checklist gating and error mapping.
"""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

from deliverable_review.api import app
from deliverable_review.db.base import get_db
from deliverable_review.review.engine import ReviewRuntime, get_runtime


@pytest.fixture
def client(db_engine, registry, roles, publisher):
    session_local = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    runtime = ReviewRuntime(templates=registry, roles=roles, publisher=publisher)

    def override_get_db():
        db = session_local()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_runtime] = lambda: runtime
    yield TestClient(app)
    app.dependency_overrides.clear()


def _create_version(client, **version):
    resp = client.post(
        "/review/deliverables",
        json={"title": "Launch video", "type": "video", "project_id": "prj-7"},
    )
    assert resp.status_code == 201, resp.text
    deliverable_id = resp.json()["deliverable"]["id"]

    resp = client.post(f"/review/deliverables/{deliverable_id}/versions", json=version)
    assert resp.status_code == 201, resp.text
    return resp.json()["version"]


def _create_workflow(client, version_id, workflow_type="two-level", **extra):
    resp = client.post(
        "/review/workflows",
        json={"version_id": version_id, "workflow_type": workflow_type, **extra},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()["workflow"]


def _started_workflow(client, **extra):
    version = _create_version(client, file_url="s3://videos/launch-v1.mp4")
    workflow = _create_workflow(client, version["id"], **extra)
    resp = client.post(f"/review/workflows/{workflow['id']}/start")
    assert resp.status_code == 200, resp.text
    return resp.json()["workflow"]


def _decide(client, workflow, level_number, approver_id, decision="approve", **extra):
    level_id = workflow["levels"][level_number - 1]["id"]
    return client.post(
        f"/review/workflows/{workflow['id']}/levels/{level_id}/decisions",
        json={"approver_id": approver_id, "decision": decision, **extra},
    )


class TestDeliverablesAndVersions:
    def test_versions_are_numbered(self, client):
        first = _create_version(client, file_url="s3://videos/v1.mp4")
        resp = client.post(
            f"/review/deliverables/{first['deliverable_id']}/versions",
            json={"change_log": "Shorter intro"},
        )

        second = resp.json()["version"]
        assert second["version_number"] == 2
        assert second["file_url"] == "s3://videos/v1.mp4"

        listed = client.get(f"/review/deliverables/{first['deliverable_id']}/versions").json()
        assert [v["version_number"] for v in listed] == [1, 2]

    def test_get_version(self, client):
        version = _create_version(client)

        resp = client.get(f"/review/versions/{version['id']}")

        assert resp.status_code == 200
        assert resp.json()["id"] == version["id"]

    def test_unknown_deliverable(self, client):
        resp = client.get("/review/deliverables/missing")

        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "NOT_FOUND"

    @pytest.mark.parametrize("method", ["put", "patch"])
    def test_versions_cannot_be_modified(self, client, method):
        version = _create_version(client)

        resp = getattr(client, method)(
            f"/review/versions/{version['id']}", json={"change_log": "edited"}
        )

        assert resp.status_code == 405
        assert resp.json()["detail"]["error"] == "IMMUTABILITY_VIOLATION"


class TestVersionComments:
    def test_thread_and_resolve(self, client):
        version = _create_version(client)
        url = f"/review/versions/{version['id']}/comments"

        resp = client.post(
            url,
            json={
                "content": "Wrong logo colour",
                "author_name": "Client Contact",
                "author_type": "client",
                "comment_type": "revision_request",
                "file_reference": "page 1",
            },
        )
        assert resp.status_code == 201, resp.text
        root = resp.json()["comment"]

        resp = client.post(
            url,
            json={
                "content": "Swapped in v2",
                "author_name": "Paula PM",
                "parent_comment_id": root["id"],
            },
        )
        assert resp.status_code == 201, resp.text

        resp = client.patch(
            f"{url}/{root['id']}", json={"resolved": True, "resolved_by": "client-1"}
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["comment"]["is_resolved"] is True

        threads = client.get(url).json()
        assert [c["id"] for c in threads] == [root["id"]]
        assert threads[0]["is_resolved"] is True
        assert [r["content"] for r in threads[0]["replies"]] == ["Swapped in v2"]

    def test_reply_to_unknown_parent(self, client):
        version = _create_version(client)

        resp = client.post(
            f"/review/versions/{version['id']}/comments",
            json={"content": "Reply", "author_name": "Paula PM", "parent_comment_id": "missing"},
        )

        assert resp.status_code == 404
        assert resp.json()["detail"]["error"] == "NOT_FOUND"

    def test_resolve_needs_a_flag(self, client):
        version = _create_version(client)

        resp = client.patch(
            f"/review/versions/{version['id']}/comments/any", json={"resolved_by": "pm-1"}
        )

        assert resp.status_code == 422


class TestTemplates:
    def test_list_templates(self, client):
        data = client.get("/review/templates").json()

        assert "structured" in data["workflow_types"]
        assert "two-level" in data["workflow_types"]
        assert data["checklists"] == ["standard-deliverable"]

    def test_get_template(self, client):
        data = client.get("/review/templates/structured").json()

        assert [level["name"] for level in data["levels"]][0] == "Internal Review"

    def test_unknown_template(self, client):
        resp = client.get("/review/templates/waterfall")

        assert resp.status_code == 422
        assert resp.json()["detail"]["error"] == "UNKNOWN_WORKFLOW_TYPE"


class TestWorkflowLifecycle:
    def test_full_approval(self, client):
        workflow = _started_workflow(client)
        assert workflow["status"] == "in_review"
        assert workflow["levels"][0]["status"] == "in_progress"

        assert _decide(client, workflow, 1, "alice").status_code == 200
        resp = _decide(client, workflow, 1, "bob", comment="Ship it")
        data = resp.json()
        assert data["level_status"] == "approved"
        assert data["current_level"] == 2

        data = _decide(client, workflow, 2, "carol").json()
        assert data["workflow_status"] == "approved"
        assert data["checklist_incomplete"] is None

        by_version = client.get(f"/review/versions/{workflow['version_id']}/workflow").json()
        assert by_version["id"] == workflow["id"]
        assert by_version["status"] == "approved"

    def test_revision_and_resubmission(self, client):
        workflow = _started_workflow(client)
        _decide(client, workflow, 1, "alice")
        _decide(client, workflow, 1, "bob")

        data = _decide(client, workflow, 2, "carol", "reject", comment="Wrong music").json()
        assert data["workflow_status"] == "revision_requested"
        assert data["workflow"]["revision_round"] == 2

        refused = client.post(f"/review/workflows/{workflow['id']}/resubmit", json={})
        assert refused.status_code == 422
        assert refused.json()["detail"]["code"] == "CHANGE_REQUIRED"

        resp = client.post(
            f"/review/workflows/{workflow['id']}/resubmit",
            json={"change_note": "Licensed track swapped in"},
        )
        assert resp.status_code == 200, resp.text
        resubmitted = resp.json()["workflow"]
        assert resubmitted["status"] == "in_review"
        assert resubmitted["current_level"] == 1
        assert resubmitted["revision_rounds"][0]["reason"] == "Wrong music"

    def test_checklist_blocks_final_approval(self, client):
        workflow = _started_workflow(
            client,
            checklist={"items": [{"category": "technical", "title": "Captions present"}]},
        )
        _decide(client, workflow, 1, "alice")
        _decide(client, workflow, 1, "bob")

        data = _decide(client, workflow, 2, "carol").json()
        assert data["workflow_status"] == "in_review"
        assert data["checklist_incomplete"]["error"] == "CHECKLIST_INCOMPLETE"

        resp = client.post(f"/review/workflows/{workflow['id']}/complete")
        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "CHECKLIST_INCOMPLETE"

        item_id = workflow["checklist"]["items"][0]["id"]
        resp = client.patch(
            f"/review/checklist-items/{item_id}",
            json={"status": "passed", "checked_by": "Quinn QA", "score": 95},
        )
        assert resp.json()["status"] == "passed"

        resp = client.post(f"/review/workflows/{workflow['id']}/complete")
        assert resp.status_code == 200, resp.text
        assert resp.json()["workflow"]["status"] == "approved"

    def test_cancel(self, client):
        workflow = _started_workflow(client)

        resp = client.post(
            f"/review/workflows/{workflow['id']}/cancel", json={"reason": "Campaign cancelled"}
        )

        assert resp.json()["workflow"]["status"] == "rejected"
        assert resp.json()["workflow"]["cancel_reason"] == "Campaign cancelled"

    def test_audit_trail(self, client):
        workflow = _started_workflow(client)
        _decide(client, workflow, 1, "alice", comment="Nice pacing")

        entries = client.get(f"/review/workflows/{workflow['id']}/audit").json()

        assert [e["action"] for e in entries] == [
            "workflow.created",
            "workflow.in_review",
            "level.activated",
            "comment.added",
            "approver.approved",
        ]

    def test_list_workflows(self, client):
        workflow = _started_workflow(client)

        data = client.get("/review/workflows", params={"status": "in_review"}).json()

        assert [w["id"] for w in data["workflows"]] == [workflow["id"]]
        assert data["by_status"]["in_review"] == 1
        assert "levels" not in data["workflows"][0]

    def test_comments_and_delegation(self, client):
        version = _create_version(client)
        workflow = _create_workflow(client, version["id"], "simple")
        level_id = workflow["levels"][0]["id"]

        resp = client.post(
            f"/review/levels/{level_id}/comments",
            json={"content": "Please review by Friday", "author_name": "Paula PM"},
        )
        assert resp.status_code == 201
        assert resp.json()["comment"]["comment_type"] == "general"

        resp = client.post(
            f"/review/workflows/{workflow['id']}/levels/{level_id}/delegations",
            json={"approver_id": "pm-1", "delegate_id": "deputy", "delegate_name": "Deputy"},
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["approver"]["delegated_from"] == "pm-1"

    def test_overdue_levels(self, client):
        workflow = _started_workflow(client, workflow_type="structured")

        resp = client.get("/review/levels/overdue", params={"now": "2100-01-01T00:00:00Z"})

        assert [level["id"] for level in resp.json()] == [workflow["levels"][0]["id"]]


class TestErrorMapping:
    def test_unauthorized_approver(self, client):
        workflow = _started_workflow(client)

        resp = _decide(client, workflow, 1, "mallory")

        assert resp.status_code == 403
        assert resp.json()["detail"]["error"] == "UNAUTHORIZED_APPROVER"

    def test_repeat_decision_conflicts(self, client):
        workflow = _started_workflow(client)
        _decide(client, workflow, 1, "alice")

        resp = _decide(client, workflow, 1, "alice")

        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "INVALID_TRANSITION"

    def test_second_active_workflow(self, client):
        version = _create_version(client)
        _create_workflow(client, version["id"])

        resp = client.post(
            "/review/workflows", json={"version_id": version["id"], "workflow_type": "simple"}
        )

        assert resp.status_code == 409
        assert resp.json()["detail"]["error"] == "VERSION_HAS_ACTIVE_WORKFLOW"

    def test_unknown_workflow(self, client):
        resp = client.post("/review/workflows/missing/start")

        assert resp.status_code == 404

    def test_invalid_decision_value(self, client):
        workflow = _started_workflow(client)

        resp = _decide(client, workflow, 1, "alice", decision="maybe")

        assert resp.status_code == 422

    def test_checklist_attach_needs_one_source(self, client):
        version = _create_version(client)
        workflow = _create_workflow(client, version["id"])

        resp = client.post(f"/review/workflows/{workflow['id']}/checklist", json={})

        assert resp.status_code == 422

    @pytest.mark.parametrize("method", ["put", "patch"])
    def test_workflows_change_only_through_commands(self, client, method):
        version = _create_version(client)
        workflow = _create_workflow(client, version["id"])

        resp = getattr(client, method)(
            f"/review/workflows/{workflow['id']}", json={"status": "approved"}
        )

        assert resp.status_code == 405
        assert resp.json()["detail"]["error"] == "DIRECT_UPDATE_NOT_ALLOWED"
