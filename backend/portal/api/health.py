from typing import Annotated, Any

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from portal import __version__
from portal.context import AppContext, get_context
from portal.database import get_db
from portal.errors import SessionStoreError

router = APIRouter(tags=["Health"])

# Never issued by generate_token, so the lookup only proves the store answers
READINESS_TOKEN = "readiness-check"


@router.get("/health")
async def health_check() -> dict[str, str]:
    return {"status": "healthy", "version": __version__}


@router.get("/health/ready")
async def readiness_check(
    context: Annotated[AppContext, Depends(get_context)],
    db: Annotated[AsyncSession, Depends(get_db)],
) -> dict[str, Any]:
    checks = {
        "database": "unhealthy",
        "session_store": "unhealthy",
    }

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        checks["database"] = f"unhealthy: {str(e)}"

    # Check session store
    try:
        await context.sessions.store.find(READINESS_TOKEN)
        checks["session_store"] = "healthy"
    except SessionStoreError as e:
        checks["session_store"] = f"unhealthy: {str(e)}"

    overall = "healthy" if all(v == "healthy" for v in checks.values()) else "unhealthy"

    return {
        "status": overall,
        "checks": checks,
    }
