"""Create review workflow tables

Revision ID: a1c4e7f20b93
Revises:
Create Date: 2026-10-17

Deliverables, versions, workflows with levels, approver slots, comments,
revision rounds, quality checklists and the audit log.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "a1c4e7f20b93"
down_revision = None
branch_labels = None
depends_on = None

APPROVER_KINDS = ("user", "role", "external")


def upgrade() -> None:
    op.create_table(
        "deliverables",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("type", sa.String(length=64), nullable=False),
        sa.Column("project_id", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_deliverables_type", "deliverables", ["type"])
    op.create_index("ix_deliverables_project_id", "deliverables", ["project_id"])

    op.create_table(
        "deliverable_versions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "deliverable_id",
            sa.String(length=36),
            sa.ForeignKey("deliverables.id"),
            nullable=False,
        ),
        sa.Column("version_number", sa.Integer, nullable=False),
        sa.Column("file_url", sa.String(length=2000), nullable=True),
        sa.Column("change_log", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "deliverable_id", "version_number", name="uq_deliverable_version_number"
        ),
    )
    op.create_index(
        "ix_deliverable_versions_deliverable_id",
        "deliverable_versions",
        ["deliverable_id"],
    )

    op.create_table(
        "review_workflows",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "version_id",
            sa.String(length=36),
            sa.ForeignKey("deliverable_versions.id"),
            nullable=False,
        ),
        sa.Column("active_version_id", sa.String(length=36), nullable=True, unique=True),
        sa.Column("workflow_type", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(
                "draft", "in_review", "revision_requested", "approved", "rejected",
                name="review_workflow_status",
            ),
            nullable=False,
        ),
        sa.Column("current_level", sa.Integer, nullable=False),
        sa.Column("revision_round", sa.Integer, nullable=False),
        sa.Column("cancel_reason", sa.Text, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lock_version", sa.Integer, nullable=False),
    )
    op.create_index("ix_review_workflows_version_id", "review_workflows", ["version_id"])
    op.create_index("ix_review_workflows_workflow_type", "review_workflows", ["workflow_type"])
    op.create_index("ix_review_workflows_status", "review_workflows", ["status"])
    op.create_index(
        "ix_review_workflows_status_type", "review_workflows", ["status", "workflow_type"]
    )

    op.create_table(
        "approval_levels",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(length=36),
            sa.ForeignKey("review_workflows.id"),
            nullable=False,
        ),
        sa.Column("level_number", sa.Integer, nullable=False),
        sa.Column("name", sa.String(length=128), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column(
            "approver_type",
            sa.Enum(*APPROVER_KINDS, name="review_approver_kind"),
            nullable=False,
        ),
        sa.Column("approver_ref", sa.String(length=256), nullable=True),
        sa.Column("min_approvers", sa.Integer, nullable=True),
        sa.Column("can_delegate", sa.Boolean, nullable=False),
        sa.Column("deadline_offset_hours", sa.Integer, nullable=True),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending", "in_progress", "approved", "rejected",
                name="review_level_status",
            ),
            nullable=False,
        ),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lock_version", sa.Integer, nullable=False),
        sa.UniqueConstraint("workflow_id", "level_number", name="uq_level_number"),
    )
    op.create_index("ix_approval_levels_workflow_id", "approval_levels", ["workflow_id"])

    op.create_table(
        "level_approvers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "level_id",
            sa.String(length=36),
            sa.ForeignKey("approval_levels.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("approver_id", sa.String(length=128), nullable=False),
        sa.Column("approver_name", sa.String(length=256), nullable=False),
        sa.Column("approver_email", sa.String(length=320), nullable=True),
        sa.Column(
            "approver_kind",
            # type already created with approval_levels
            postgresql.ENUM(*APPROVER_KINDS, name="review_approver_kind", create_type=False),
            nullable=False,
        ),
        sa.Column(
            "status",
            sa.Enum("pending", "approved", "rejected", name="review_approver_status"),
            nullable=False,
        ),
        sa.Column("approved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("rejected_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("comments", sa.Text, nullable=True),
        sa.Column("delegated_from", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lock_version", sa.Integer, nullable=False),
        sa.UniqueConstraint("level_id", "approver_id", name="uq_level_approver"),
    )
    op.create_index("ix_level_approvers_level_id", "level_approvers", ["level_id"])
    op.create_index("ix_level_approvers_approver_id", "level_approvers", ["approver_id"])

    op.create_table(
        "level_comments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "level_id",
            sa.String(length=36),
            sa.ForeignKey("approval_levels.id"),
            nullable=False,
        ),
        sa.Column(
            "workflow_id",
            sa.String(length=36),
            sa.ForeignKey("review_workflows.id"),
            nullable=False,
        ),
        sa.Column(
            "comment_type",
            sa.Enum(
                "general", "feedback", "approval_note", "revision_request", "quality_issue",
                name="review_comment_type",
            ),
            nullable=False,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("author_name", sa.String(length=256), nullable=False),
        sa.Column("author_id", sa.String(length=128), nullable=True),
        sa.Column("round_number", sa.Integer, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_level_comments_level_id", "level_comments", ["level_id"])
    op.create_index("ix_level_comments_workflow_id", "level_comments", ["workflow_id"])

    op.create_table(
        "revision_rounds",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(length=36),
            sa.ForeignKey("review_workflows.id"),
            nullable=False,
        ),
        sa.Column("round_number", sa.Integer, nullable=False),
        sa.Column(
            "status",
            sa.Enum("requested", name="review_round_status"),
            nullable=False,
        ),
        sa.Column("requested_by", sa.String(length=256), nullable=False),
        sa.Column("requested_by_id", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.Text, nullable=True),
        sa.Column("level_number", sa.Integer, nullable=False),
        sa.Column("version_id", sa.String(length=36), nullable=False),
        sa.Column("snapshot", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("workflow_id", "round_number", name="uq_revision_round"),
    )
    op.create_index("ix_revision_rounds_workflow_id", "revision_rounds", ["workflow_id"])

    op.create_table(
        "quality_checklists",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "workflow_id",
            sa.String(length=36),
            sa.ForeignKey("review_workflows.id"),
            nullable=False,
            unique=True,
        ),
        sa.Column("template_id", sa.String(length=128), nullable=True),
        sa.Column(
            "status",
            sa.Enum("pending", "passed", "failed", name="review_checklist_status"),
            nullable=False,
        ),
        sa.Column("overall_score", sa.Float, nullable=False),
        sa.Column("passed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lock_version", sa.Integer, nullable=False),
    )

    op.create_table(
        "quality_check_items",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "checklist_id",
            sa.String(length=36),
            sa.ForeignKey("quality_checklists.id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer, nullable=False),
        sa.Column("category", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=256), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("is_required", sa.Boolean, nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "passed", "failed", "n_a", name="review_check_status"),
            nullable=False,
        ),
        sa.Column("score", sa.Integer, nullable=True),
        sa.Column("notes", sa.Text, nullable=True),
        sa.Column("checked_by", sa.String(length=256), nullable=True),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lock_version", sa.Integer, nullable=False),
    )
    op.create_index(
        "ix_quality_check_items_checklist_id", "quality_check_items", ["checklist_id"]
    )
    op.create_index("ix_quality_check_items_category", "quality_check_items", ["category"])

    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(length=36), nullable=False, unique=True),
        sa.Column("ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "actor_kind",
            sa.Enum("human", "system", name="audit_actor_kind"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(length=128), nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_kind", sa.String(length=50), nullable=False),
        sa.Column("entity_id", sa.String(length=128), nullable=False),
        sa.Column("workflow_id", sa.String(length=36), nullable=True),
        sa.Column("level_id", sa.String(length=36), nullable=True),
        sa.Column("before", sa.JSON, nullable=True),
        sa.Column("after", sa.JSON, nullable=True),
        sa.Column("note", sa.Text, nullable=True),
    )
    op.create_index("ix_audit_log_ts", "audit_log", ["ts"])
    op.create_index("ix_audit_log_actor_id", "audit_log", ["actor_id"])
    op.create_index("ix_audit_log_action", "audit_log", ["action"])
    op.create_index("ix_audit_log_workflow_id", "audit_log", ["workflow_id"])
    op.create_index("ix_audit_log_level_id", "audit_log", ["level_id"])
    op.create_index("ix_audit_log_entity", "audit_log", ["entity_kind", "entity_id"])
    op.create_index("ix_audit_log_workflow_id_seq", "audit_log", ["workflow_id", "id"])


def downgrade() -> None:
    op.drop_table("audit_log")
    op.drop_table("quality_check_items")
    op.drop_table("quality_checklists")
    op.drop_table("revision_rounds")
    op.drop_table("level_comments")
    op.drop_table("level_approvers")
    op.drop_table("approval_levels")
    op.drop_table("review_workflows")
    op.drop_table("deliverable_versions")
    op.drop_table("deliverables")

    bind = op.get_bind()
    for enum_name in (
        "audit_actor_kind",
        "review_check_status",
        "review_checklist_status",
        "review_round_status",
        "review_comment_type",
        "review_approver_status",
        "review_level_status",
        "review_approver_kind",
        "review_workflow_status",
    ):
        sa.Enum(name=enum_name).drop(bind, checkfirst=True)
