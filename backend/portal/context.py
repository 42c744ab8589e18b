import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from fastapi import Request
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from portal.config import Settings
from portal.utils.oidc import OIDCClient
from portal.utils.session import SessionManager

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Shared collaborators, built once by ``create_app`` and stored on ``app.state``."""

    settings: Settings
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    sessions: SessionManager
    oidc: OIDCClient
    templates: Jinja2Templates
    tasks: set[asyncio.Task] = field(default_factory=set)

    def background_task(
        self, fn: Callable[..., Awaitable[Any]], *args: Any, request: Request | None = None
    ) -> asyncio.Task:
        """
        Run ``fn(*args)`` outside the request lifecycle.

        Failures are reported and swallowed so a broken task can never take the
        process down. The task is tracked until it finishes so shutdown can wait
        for it.
        """
        name = getattr(fn, "__qualname__", repr(fn))

        async def runner() -> None:
            try:
                await fn(*args)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                report_server_error(exc, request=request, task=name)

        task = asyncio.create_task(runner(), name=name)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def wait_background_tasks(self) -> None:
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)


def report_server_error(
    exc: BaseException, request: Request | None = None, task: str | None = None
) -> None:
    if request is not None:
        logger.error(
            "Unhandled exception on %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
    else:
        logger.error("Background task %s failed: %s", task, exc, exc_info=exc)


def get_context(request: Request) -> AppContext:
    return request.app.state.context
