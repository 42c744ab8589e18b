"""
Request-scoped session handling.

``SessionManager.load_and_save`` runs as HTTP middleware: it loads the session
named by the cookie before the handler runs and persists it afterwards. Handlers
read and write through ``SessionManager.get``/``put``/``pop``/``destroy``.
"""

import asyncio
import enum
import logging
import secrets
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from fastapi import Request, Response

from portal.config import Settings
from portal.errors import SessionStoreError
from portal.schemas.auth import SessionData
from portal.services.session_store import SessionStore

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class SessionStatus(enum.Enum):
    UNMODIFIED = "unmodified"
    MODIFIED = "modified"
    DESTROYED = "destroyed"


class Session:
    def __init__(self, token: str | None, data: SessionData, expiry: datetime):
        self.token = token
        self.data = data
        self.expiry = expiry
        self.status = SessionStatus.UNMODIFIED

    def get(self, key: str) -> Any:
        _check_key(key)
        return getattr(self.data, key)

    def put(self, key: str, value: Any) -> None:
        _check_key(key)
        setattr(self.data, key, value)
        self.status = SessionStatus.MODIFIED

    def pop(self, key: str) -> Any:
        value = self.get(key)
        if value is not None:
            self.put(key, None)
        return value


def _check_key(key: str) -> None:
    if key not in SessionData.model_fields:
        raise KeyError(f"Unknown session key: {key}")


class SessionManager:
    def __init__(
        self,
        store: SessionStore,
        *,
        lifetime: timedelta = timedelta(hours=24),
        cookie_name: str = "session",
        cookie_secure: bool = True,
        cookie_path: str = "/",
        cookie_samesite: str = "lax",
    ):
        self.store = store
        self.lifetime = lifetime
        self.cookie_name = cookie_name
        self.cookie_secure = cookie_secure
        self.cookie_path = cookie_path
        self.cookie_samesite = cookie_samesite

    @classmethod
    def from_settings(cls, settings: Settings, store: SessionStore) -> "SessionManager":
        return cls(
            store,
            lifetime=timedelta(hours=settings.session_lifetime_hours),
            cookie_name=settings.session_cookie_name,
            cookie_secure=settings.session_cookie_secure,
        )

    async def load(self, token: str | None) -> Session:
        # Store failures propagate: an unreachable store is a server error,
        # never an anonymous request.
        if token:
            record = await self.store.find(token)
            if record is not None:
                return Session(record.token, SessionData.model_validate(record.data), record.expiry)
        return Session(None, SessionData(), datetime.now(timezone.utc) + self.lifetime)

    async def save(self, session: Session, response: Response) -> None:
        if session.status is SessionStatus.DESTROYED:
            response.delete_cookie(
                self.cookie_name,
                path=self.cookie_path,
                secure=self.cookie_secure,
                httponly=True,
                samesite=self.cookie_samesite,
            )
        elif session.status is SessionStatus.MODIFIED:
            if session.token is None:
                session.token = generate_token()
            await self.store.commit(session.token, session.data.model_dump(mode="json"), session.expiry)
            response.set_cookie(
                self.cookie_name,
                session.token,
                expires=session.expiry,
                path=self.cookie_path,
                secure=self.cookie_secure,
                httponly=True,
                samesite=self.cookie_samesite,
            )
        response.headers.append("Vary", "Cookie")

    async def load_and_save(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request.state.session = await self.load(request.cookies.get(self.cookie_name))
        response = await call_next(request)
        await self.save(request.state.session, response)
        return response

    def session(self, request: Request) -> Session:
        session = getattr(request.state, "session", None)
        if session is None:
            raise RuntimeError("No session in request state; is load_and_save installed?")
        return session

    def get(self, request: Request, key: str) -> Any:
        return self.session(request).get(key)

    def put(self, request: Request, key: str, value: Any) -> None:
        self.session(request).put(key, value)

    def pop(self, request: Request, key: str) -> Any:
        return self.session(request).pop(key)

    async def destroy(self, request: Request) -> None:
        session = self.session(request)
        if session.token is not None:
            await self.store.delete(session.token)
        session.token = None
        session.data = SessionData()
        session.expiry = datetime.now(timezone.utc) + self.lifetime
        session.status = SessionStatus.DESTROYED

    async def renew_token(self, request: Request) -> None:
        """Move the session to a fresh token, e.g. after a privilege change."""
        session = self.session(request)
        if session.token is not None:
            await self.store.delete(session.token)
        session.token = generate_token()
        session.status = SessionStatus.MODIFIED

    async def cleanup_expired(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                deleted = await self.store.delete_expired()
            except SessionStoreError as e:
                logger.error("Session cleanup failed: %s", e)
                continue
            if deleted:
                logger.info("Removed %d expired sessions", deleted)
