import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI, Request, status
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from portal import __version__
from portal.api.router import api_router
from portal.config import Settings, get_settings
from portal.context import AppContext
from portal.database import create_engine, create_session_maker, create_tables
from portal.errors import AuthenticationRequired
from portal.middleware import log_access, recover_panic, security_headers
from portal.services.session_store import DatabaseSessionStore, SessionStore
from portal.utils.oidc import OIDCClient
from portal.utils.session import SessionManager
from portal.utils.templates import create_templates, render_page

logger = logging.getLogger(__name__)

STATIC_DIR = Path(__file__).resolve().parent / "static"


def create_app(
    settings: Settings | None = None,
    *,
    oidc_client: OIDCClient | None = None,
    session_store: SessionStore | None = None,
) -> FastAPI:
    settings = settings or get_settings()

    engine = create_engine(settings)
    session_maker = create_session_maker(engine)
    store = session_store if session_store is not None else DatabaseSessionStore(session_maker)
    context = AppContext(
        settings=settings,
        engine=engine,
        session_maker=session_maker,
        sessions=SessionManager.from_settings(settings, store),
        oidc=oidc_client if oidc_client is not None else OIDCClient(settings),
        templates=create_templates(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        warning = settings.validate_security()
        if warning:
            logger.error("Configuration: %s", warning)
        logger.info("OIDC issuer: %s", settings.issuer_url)

        if settings.db_automigrate:
            await create_tables(engine)

        cleanup = context.background_task(
            context.sessions.cleanup_expired, settings.session_cleanup_interval_seconds
        )
        yield
        cleanup.cancel()
        await context.wait_background_tasks()
        await engine.dispose()

    app = FastAPI(
        title=settings.app_name,
        description="User profile pages behind OpenID Connect login",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.context = context

    # Starlette wraps each newly added middleware around the existing stack, so
    # these are listed innermost first: access log, recover panic, security
    # headers, session load/save, routes.
    app.middleware("http")(context.sessions.load_and_save)
    app.middleware("http")(security_headers)
    app.middleware("http")(recover_panic)
    app.middleware("http")(log_access)

    app.mount("/static", StaticFiles(directory=STATIC_DIR), name="static")
    app.include_router(api_router)

    @app.exception_handler(AuthenticationRequired)
    async def authentication_required_handler(
        request: Request, exc: AuthenticationRequired
    ) -> RedirectResponse:
        return RedirectResponse(exc.login_url, status_code=status.HTTP_303_SEE_OTHER)

    @app.exception_handler(StarletteHTTPException)
    async def not_found_handler(request: Request, exc: StarletteHTTPException) -> Response:
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return render_page(
                request,
                "error.html",
                {"title": "Not found", "message": "The requested page could not be found."},
                status_code=status.HTTP_404_NOT_FOUND,
            )
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append({"field": field, "message": error["msg"]})

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": "Validation error",
                "errors": errors,
            },
        )

    return app
