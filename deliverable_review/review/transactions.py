"""
Transaction helper shared by the engine and the checklist gate.
"""

from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .errors import ConcurrentModification

logger = structlog.get_logger()


@contextmanager
def atomic(db: Session, **context: Any) -> Iterator[Session]:
    """Commit on success; roll back everything on any failure.

    A lost compare-and-swap on a ``lock_version`` column surfaces as
    ``ConcurrentModification`` carrying ``context``.
    """
    try:
        yield db
        db.commit()
    except StaleDataError as e:
        db.rollback()
        logger.info("concurrent_modification", error=str(e), **context)
        raise ConcurrentModification(
            "The object was modified concurrently; re-read and retry", **context
        ) from e
    except Exception:
        db.rollback()
        raise
