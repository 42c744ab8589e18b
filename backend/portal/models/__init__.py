"""Database models."""

from portal.models.session import SessionRecord
from portal.models.user import User

__all__ = [
    "SessionRecord",
    "User",
]
