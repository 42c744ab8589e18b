"""
Server-side session storage backends.

A store only knows about opaque tokens, JSON-compatible payloads and absolute
expiry times. Typed access to the payload lives in ``portal.utils.session``.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from portal.database import upsert_insert
from portal.errors import SessionStoreError
from portal.models.session import SessionRecord

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class StoredSession:
    token: str
    data: dict[str, Any]
    expiry: datetime


class SessionStore(Protocol):
    async def find(self, token: str) -> StoredSession | None:
        """Return the live session for ``token``, or None if absent or expired."""
        ...

    async def commit(self, token: str, data: dict[str, Any], expiry: datetime) -> None: ...

    async def delete(self, token: str) -> None: ...

    async def delete_expired(self) -> int: ...


class MemorySessionStore:
    """Process-local store, for tests and single-process development."""

    def __init__(self) -> None:
        self._records: dict[str, StoredSession] = {}
        self._lock = asyncio.Lock()

    async def find(self, token: str) -> StoredSession | None:
        async with self._lock:
            record = self._records.get(token)
            if record is None:
                return None
            if record.expiry <= _utcnow():
                del self._records[token]
                return None
            return StoredSession(token=record.token, data=dict(record.data), expiry=record.expiry)

    async def commit(self, token: str, data: dict[str, Any], expiry: datetime) -> None:
        async with self._lock:
            self._records[token] = StoredSession(token=token, data=dict(data), expiry=_as_utc(expiry))

    async def delete(self, token: str) -> None:
        async with self._lock:
            self._records.pop(token, None)

    async def delete_expired(self) -> int:
        now = _utcnow()
        async with self._lock:
            expired = [token for token, record in self._records.items() if record.expiry <= now]
            for token in expired:
                del self._records[token]
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)


class DatabaseSessionStore:
    """Durable store backed by the ``sessions`` table."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker

    async def find(self, token: str) -> StoredSession | None:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    select(SessionRecord).where(
                        SessionRecord.token == token,
                        SessionRecord.expiry > _utcnow(),
                    )
                )
                record = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to load session: {e}") from e

        if record is None:
            return None
        return StoredSession(token=record.token, data=record.data, expiry=_as_utc(record.expiry))

    async def commit(self, token: str, data: dict[str, Any], expiry: datetime) -> None:
        try:
            async with self.session_maker() as db:
                stmt = upsert_insert(db, SessionRecord).values(token=token, data=data, expiry=expiry)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["token"],
                    set_={"data": stmt.excluded.data, "expiry": stmt.excluded.expiry},
                )
                await db.execute(stmt)
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to save session: {e}") from e

    async def delete(self, token: str) -> None:
        try:
            async with self.session_maker() as db:
                await db.execute(delete(SessionRecord).where(SessionRecord.token == token))
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to delete session: {e}") from e

    async def delete_expired(self) -> int:
        try:
            async with self.session_maker() as db:
                result = await db.execute(
                    delete(SessionRecord).where(SessionRecord.expiry <= _utcnow())
                )
                await db.commit()
        except SQLAlchemyError as e:
            raise SessionStoreError(f"Failed to delete expired sessions: {e}") from e
        return result.rowcount or 0
