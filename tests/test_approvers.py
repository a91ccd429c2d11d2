"""Tests for approver requirements and role resolution."""

import json

import pytest

from deliverable_review.review.approvers import (
    ExternalApprover,
    RoleApprover,
    RoleDirectory,
    UserApprover,
    approver_specs_adapter,
    resolve_approvers,
)
from deliverable_review.review.enums import ApproverKind
from deliverable_review.review.errors import ApproverResolutionError
from deliverable_review.review.primitives import ApproverIdentity


class TestApproverSpecs:
    def test_discriminated_parsing(self):
        specs = approver_specs_adapter.validate_python(
            [
                {"kind": "user", "approver_id": "u1", "name": "User One"},
                {"kind": "role", "role": "client"},
                {"kind": "external", "name": "Ext", "email": "Ext@Example.com"},
            ]
        )

        assert [type(s) for s in specs] == [UserApprover, RoleApprover, ExternalApprover]

    def test_external_identity_defaults_to_email(self):
        spec = ExternalApprover(name="Ext", email="Ext@Example.com")
        assert spec.identity_id == "external:ext@example.com"

    def test_external_identity_explicit(self):
        spec = ExternalApprover(name="Ext", email="e@example.com", approver_id="crm-42")
        assert spec.identity_id == "crm-42"


class TestRoleDirectory:
    def test_add_ignores_duplicates(self):
        directory = RoleDirectory()
        member = ApproverIdentity(approver_id="pm-1", name="PM")
        directory.add("project_manager", member)
        directory.add("project_manager", member)

        assert directory.members("project_manager") == [member]
        assert directory.members("unknown") == []

    def test_from_file(self, tmp_path):
        path = tmp_path / "roles.json"
        path.write_text(
            json.dumps({"client": [{"approver_id": "c1", "name": "Client", "email": "c@x.io"}]})
        )

        directory = RoleDirectory.from_file(path)

        assert directory.roles == ["client"]
        assert directory.members("client")[0].email == "c@x.io"


class TestResolveApprovers:
    def test_mixed_requirements_keep_order(self, roles):
        resolved = resolve_approvers(
            [
                UserApprover(approver_id="alice", name="Alice"),
                RoleApprover(role="reviewers"),
                ExternalApprover(name="Ext", email="ext@example.com"),
            ],
            roles,
        )

        assert [identity.approver_id for _, identity in resolved] == [
            "alice",
            "rev-1",
            "rev-2",
            "rev-3",
            "external:ext@example.com",
        ]
        assert [kind for kind, _ in resolved][:2] == [ApproverKind.USER, ApproverKind.ROLE]

    def test_duplicates_removed(self, roles):
        resolved = resolve_approvers(
            [RoleApprover(role="project_manager"), UserApprover(approver_id="pm-1", name="Paula")],
            roles,
        )

        assert len(resolved) == 1
        assert resolved[0][0] == ApproverKind.ROLE

    def test_accepts_generators(self, roles):
        resolved = resolve_approvers((RoleApprover(role=r) for r in ["client"]), roles)
        assert resolved[0][1].approver_id == "client-1"

    def test_empty_role_fails(self, roles):
        with pytest.raises(ApproverResolutionError) as exc:
            resolve_approvers([RoleApprover(role="legal")], roles, level_name="Legal")

        assert exc.value.context["level"] == "Legal"
        assert exc.value.context["requirements"] == [{"kind": "role", "role": "legal"}]

    def test_no_requirements_fails(self, roles):
        with pytest.raises(ApproverResolutionError):
            resolve_approvers([], roles)
