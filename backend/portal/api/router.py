from fastapi import APIRouter

from portal.api.auth import router as auth_router
from portal.api.health import router as health_router
from portal.api.pages import router as pages_router

api_router = APIRouter()

# Include sub-routers
api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router)
api_router.include_router(pages_router)
