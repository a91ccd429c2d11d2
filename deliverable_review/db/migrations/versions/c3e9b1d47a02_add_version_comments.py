"""Add version_comments table for threaded version discussion

Revision ID: c3e9b1d47a02
Revises: a1c4e7f20b93
Create Date: 2026-10-17

Comments on a version outside any workflow: replies via parent_comment_id,
an optional file reference, and resolve/unresolve.
"""
from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "c3e9b1d47a02"
down_revision = "a1c4e7f20b93"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "version_comments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column(
            "version_id",
            sa.String(length=36),
            sa.ForeignKey("deliverable_versions.id"),
            nullable=False,
        ),
        sa.Column(
            "parent_comment_id",
            sa.String(length=36),
            sa.ForeignKey("version_comments.id"),
            nullable=True,
        ),
        sa.Column(
            "comment_type",
            # type already created with level_comments
            postgresql.ENUM(
                "general", "feedback", "approval_note", "revision_request", "quality_issue",
                name="review_comment_type",
                create_type=False,
            ),
            nullable=False,
        ),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("file_reference", sa.String(length=512), nullable=True),
        sa.Column("attachments", sa.JSON, nullable=False),
        sa.Column(
            "author_type",
            sa.Enum("employee", "client", name="review_comment_author_type"),
            nullable=False,
        ),
        sa.Column("author_name", sa.String(length=256), nullable=False),
        sa.Column("author_id", sa.String(length=128), nullable=True),
        sa.Column("is_resolved", sa.Boolean, nullable=False),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resolved_by", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lock_version", sa.Integer, nullable=False),
    )
    op.create_index("ix_version_comments_version_id", "version_comments", ["version_id"])
    op.create_index(
        "ix_version_comments_parent_comment_id", "version_comments", ["parent_comment_id"]
    )


def downgrade() -> None:
    op.drop_table("version_comments")
    sa.Enum(name="review_comment_author_type").drop(op.get_bind(), checkfirst=True)
