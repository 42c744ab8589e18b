import base64
import logging
import secrets
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from portal.context import AppContext, get_context
from portal.database import get_db
from portal.errors import OIDCError
from portal.schemas.auth import IdentityProfile
from portal.services.user_service import UserService

router = APIRouter(tags=["Authentication"])
logger = logging.getLogger(__name__)

STATE_BYTES = 32


def csrf_token() -> str:
    """32 random bytes, standard base64 (44 characters)."""
    return base64.b64encode(secrets.token_bytes(STATE_BYTES)).decode("ascii")


@router.get("/login")
async def login(
    request: Request,
    context: Annotated[AppContext, Depends(get_context)],
) -> RedirectResponse:
    state = csrf_token()
    context.sessions.put(request, "oauth_state", state)

    authorization_url = await context.oidc.authorization_url(state)
    return RedirectResponse(authorization_url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)


@router.get("/callback")
async def callback(
    request: Request,
    context: Annotated[AppContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
    code: str = "",
    state: str = "",
) -> RedirectResponse:
    saved_state = context.sessions.get(request, "oauth_state")
    if not saved_state or not secrets.compare_digest(
        state.encode("utf-8"), saved_state.encode("utf-8")
    ):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid state parameter",
        )
    if not code:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing authorization code",
        )

    token_set = await context.oidc.exchange_code(code)
    claims = await context.oidc.verify_id_token(token_set)

    profile = IdentityProfile.from_claims(claims)
    if not profile.subject:
        raise OIDCError("Missing sub claim in ID token")

    logger.info("OIDC profile data: %s", profile.model_dump())

    user = await UserService(db).upsert(
        profile.subject,
        profile.email,
        profile.name,
        profile.picture,
    )
    await db.commit()

    # Nothing below runs unless every verification step above succeeded.
    await context.sessions.renew_token(request)
    context.sessions.pop(request, "oauth_state")
    context.sessions.put(request, "access_token", token_set.access_token)
    context.sessions.put(request, "profile", profile)
    context.sessions.put(request, "user_id", user.id)

    logger.info("User authenticated: user_id=%s subject=%s", user.id, user.subject)

    return RedirectResponse("/profile", status_code=status.HTTP_303_SEE_OTHER)


@router.get("/logout")
async def logout(
    request: Request,
    context: Annotated[AppContext, Depends(get_context)],
) -> RedirectResponse:
    await context.sessions.destroy(request)

    logout_url = context.oidc.logout_url(context.settings.base_url)
    return RedirectResponse(logout_url, status_code=status.HTTP_303_SEE_OTHER)
