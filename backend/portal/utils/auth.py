import logging
import secrets
from typing import Annotated, Optional

from argon2 import PasswordHasher
from argon2.exceptions import VerifyMismatchError
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from starlette.concurrency import run_in_threadpool

from portal.context import get_context
from portal.errors import AuthenticationRequired
from portal.schemas.auth import IdentityProfile

logger = logging.getLogger(__name__)

basic_scheme = HTTPBasic(auto_error=False)
password_hasher = PasswordHasher()

BASIC_AUTH_CHALLENGE = 'Basic realm="restricted", charset="UTF-8"'


async def require_auth(request: Request) -> IdentityProfile:
    """
    Gate for session-protected routes.

    A request is authenticated when its session carries a profile with a
    non-empty subject. Anything else is sent to the login page; the route
    handler never runs.
    """
    session = get_context(request).sessions.session(request)
    if not session.data.is_authenticated:
        raise AuthenticationRequired()
    return session.data.profile


def basic_authentication_required() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="You must be authenticated to access this resource",
        headers={"WWW-Authenticate": BASIC_AUTH_CHALLENGE},
    )


async def require_basic_auth(
    request: Request,
    credentials: Annotated[Optional[HTTPBasicCredentials], Depends(basic_scheme)],
) -> str:
    """
    Gate for routes protected by a single configured username and password.

    Wrong or missing credentials get a Basic challenge. A stored hash that
    argon2 cannot parse is a server error.
    """
    settings = get_context(request).settings
    if credentials is None:
        raise basic_authentication_required()

    if not settings.basic_auth_configured():
        logger.warning("Basic auth requested but BASIC_AUTH_* is not configured")
        raise basic_authentication_required()

    if not secrets.compare_digest(
        credentials.username.encode("utf-8"), settings.basic_auth_username.encode("utf-8")
    ):
        raise basic_authentication_required()

    try:
        await run_in_threadpool(
            password_hasher.verify, settings.basic_auth_hashed_password, credentials.password
        )
    except VerifyMismatchError:
        raise basic_authentication_required() from None

    return credentials.username


# Type aliases for dependency injection
CurrentProfile = Annotated[IdentityProfile, Depends(require_auth)]
BasicAuthUser = Annotated[str, Depends(require_basic_auth)]
