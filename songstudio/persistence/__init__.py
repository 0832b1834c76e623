"""
Persistence Layer

Server-side web session storage.
"""

from .session_store import DatabaseSessionStore, StoredSession

__all__ = [
    "DatabaseSessionStore",
    "StoredSession",
]
