"""
Version Store: deliverables and their immutable version snapshots.
"""

from typing import List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..db.audit_service import AuditTrail
from ..db.models import DeliverableModel, DeliverableVersionModel, VersionCommentModel
from .errors import ConcurrentModification, NotFound
from .primitives import Actor, generate_ulid, utc_now
from .schemas import (
    DeliverableCreate,
    VersionCommentCreate,
    VersionCommentResolve,
    VersionCreate,
)
from .transactions import atomic

logger = structlog.get_logger()


class VersionStore:
    """Creates and reads deliverable versions.

    Version numbers are assigned per deliverable starting at 1. Two writers
    racing for the same number collide on the unique constraint; the loser
    gets ``ConcurrentModification`` and may simply retry.
    """

    def __init__(self, db: Session, audit: Optional[AuditTrail] = None):
        self.db = db
        self.audit = audit or AuditTrail(db)

    def create_deliverable(
        self, deliverable: DeliverableCreate, actor: Optional[Actor] = None
    ) -> DeliverableModel:
        db_deliverable = DeliverableModel(
            id=generate_ulid(),
            title=deliverable.title,
            type=deliverable.type,
            project_id=deliverable.project_id,
            created_at=utc_now(),
        )
        self.db.add(db_deliverable)
        self.db.flush()
        self.audit.log_create(
            "Deliverable", db_deliverable.id, db_deliverable.to_dict(), actor=actor
        )
        self.db.commit()
        logger.info("deliverable_created", deliverable_id=db_deliverable.id)
        return db_deliverable

    def get_deliverable(self, deliverable_id: str) -> DeliverableModel:
        deliverable = self.db.get(DeliverableModel, deliverable_id)
        if deliverable is None:
            raise NotFound("Deliverable", deliverable_id)
        return deliverable

    def create_version(
        self,
        deliverable_id: str,
        version: Optional[VersionCreate] = None,
        actor: Optional[Actor] = None,
    ) -> DeliverableVersionModel:
        """Store the next version of a deliverable."""
        version = version or VersionCreate()
        self.get_deliverable(deliverable_id)
        previous = self.latest_version(deliverable_id)

        db_version = DeliverableVersionModel(
            id=generate_ulid(),
            deliverable_id=deliverable_id,
            version_number=(previous.version_number + 1) if previous else 1,
            file_url=version.file_url or (previous.file_url if previous else None),
            change_log=version.change_log,
            created_at=utc_now(),
        )
        self.db.add(db_version)
        try:
            self.db.flush()
            self.audit.log_create(
                "Version", db_version.id, db_version.to_dict(), actor=actor
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            raise ConcurrentModification(
                "Another version was stored concurrently; retry",
                deliverable_id=deliverable_id,
                latest_version_number=self._max_version_number(deliverable_id),
            )

        logger.info(
            "version_created",
            deliverable_id=deliverable_id,
            version_id=db_version.id,
            version_number=db_version.version_number,
        )
        return db_version

    def get_version(self, version_id: str) -> DeliverableVersionModel:
        version = self.db.get(DeliverableVersionModel, version_id)
        if version is None:
            raise NotFound("Version", version_id)
        return version

    def list_versions(self, deliverable_id: str) -> List[DeliverableVersionModel]:
        self.get_deliverable(deliverable_id)
        return (
            self.db.query(DeliverableVersionModel)
            .filter(DeliverableVersionModel.deliverable_id == deliverable_id)
            .order_by(DeliverableVersionModel.version_number.asc())
            .all()
        )

    def latest_version(self, deliverable_id: str) -> Optional[DeliverableVersionModel]:
        return (
            self.db.query(DeliverableVersionModel)
            .filter(DeliverableVersionModel.deliverable_id == deliverable_id)
            .order_by(DeliverableVersionModel.version_number.desc())
            .first()
        )

    # -- version comments ----------------------------------------------------

    def add_comment(
        self,
        version_id: str,
        comment: VersionCommentCreate,
        actor: Optional[Actor] = None,
    ) -> VersionCommentModel:
        """Comment on a version, or reply to an existing comment on it."""
        with atomic(self.db, version_id=version_id):
            self.get_version(version_id)
            if comment.parent_comment_id:
                parent = self.db.get(VersionCommentModel, comment.parent_comment_id)
                if parent is None or parent.version_id != version_id:
                    raise NotFound("VersionComment", comment.parent_comment_id)

            db_comment = VersionCommentModel(
                id=generate_ulid(),
                version_id=version_id,
                parent_comment_id=comment.parent_comment_id,
                comment_type=comment.comment_type.value,
                content=comment.content,
                file_reference=comment.file_reference,
                attachments=list(comment.attachments),
                author_type=comment.author_type.value,
                author_name=comment.author_name,
                author_id=comment.author_id,
                is_resolved=False,
                created_at=utc_now(),
            )
            self.db.add(db_comment)
            self.db.flush()
            self.audit.log_create(
                "VersionComment",
                db_comment.id,
                db_comment.to_dict(with_replies=False),
                actor=actor
                or Actor(
                    actor_id=comment.author_id or comment.author_name,
                    display=comment.author_name,
                ),
            )

        logger.info(
            "version_comment_added",
            version_id=version_id,
            comment_id=db_comment.id,
            reply=bool(comment.parent_comment_id),
        )
        return db_comment

    def list_comments(self, version_id: str) -> List[VersionCommentModel]:
        """Top-level comments, newest first; replies hang off each one."""
        self.get_version(version_id)
        return (
            self.db.query(VersionCommentModel)
            .filter(
                VersionCommentModel.version_id == version_id,
                VersionCommentModel.parent_comment_id.is_(None),
            )
            .order_by(VersionCommentModel.created_at.desc(), VersionCommentModel.id.desc())
            .all()
        )

    def resolve_comment(
        self,
        version_id: str,
        comment_id: str,
        resolution: VersionCommentResolve,
        actor: Optional[Actor] = None,
    ) -> VersionCommentModel:
        """Mark a comment resolved or reopen it."""
        with atomic(self.db, version_id=version_id, comment_id=comment_id):
            comment = self.db.get(VersionCommentModel, comment_id)
            if comment is None or comment.version_id != version_id:
                raise NotFound("VersionComment", comment_id)
            if comment.is_resolved == resolution.resolved:
                return comment

            before = {"is_resolved": comment.is_resolved, "resolved_by": comment.resolved_by}
            comment.is_resolved = resolution.resolved
            comment.resolved_at = utc_now() if resolution.resolved else None
            comment.resolved_by = resolution.resolved_by if resolution.resolved else None
            self.audit.record(
                "version_comment.resolved" if resolution.resolved else "version_comment.reopened",
                "VersionComment",
                comment.id,
                actor=actor or Actor(actor_id=resolution.resolved_by),
                before=before,
                after={"is_resolved": comment.is_resolved, "resolved_by": comment.resolved_by},
            )

        logger.info(
            "version_comment_resolution_changed",
            comment_id=comment_id,
            resolved=resolution.resolved,
        )
        return comment

    def _max_version_number(self, deliverable_id: str) -> int:
        return (
            self.db.query(func.max(DeliverableVersionModel.version_number))
            .filter(DeliverableVersionModel.deliverable_id == deliverable_id)
            .scalar()
            or 0
        )
