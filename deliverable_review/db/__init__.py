"""
Database package for the deliverable review service.
"""

from .base import Base, get_db, get_engine, get_session_local

__all__ = [
    "Base",
    "get_db",
    "get_engine",
    "get_session_local",
]
