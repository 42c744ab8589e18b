"""Service layer for business logic."""

from portal.services.session_store import DatabaseSessionStore, MemorySessionStore, SessionStore
from portal.services.user_service import UserService

__all__ = [
    "DatabaseSessionStore",
    "MemorySessionStore",
    "SessionStore",
    "UserService",
]
