from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import HTMLResponse
from sqlalchemy.ext.asyncio import AsyncSession

from portal.context import AppContext, get_context
from portal.database import get_db
from portal.services.user_service import UserService
from portal.utils.auth import BasicAuthUser, CurrentProfile
from portal.utils.templates import render_page

router = APIRouter(tags=["Pages"])


@router.get("/", response_class=HTMLResponse)
async def home(request: Request) -> HTMLResponse:
    return render_page(request, "home.html")


@router.get("/profile", response_class=HTMLResponse)
async def user_profile(
    request: Request,
    profile: CurrentProfile,
    context: Annotated[AppContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> HTMLResponse:
    user_id = context.sessions.get(request, "user_id")
    user = await UserService(db).get_by_id(user_id) if user_id else None
    return render_page(request, "profile.html", {"user": user})


@router.get("/restricted", response_class=HTMLResponse)
async def restricted(request: Request, username: BasicAuthUser) -> HTMLResponse:
    return render_page(request, "restricted.html", {"username": username})
