"""V1 API router aggregation."""

from fastapi import APIRouter

from tenantcms.api.v1.auth import router as auth_router
from tenantcms.api.v1.platform import router as platform_router
from tenantcms.api.v1.site import router as site_router
from tenantcms.api.v1.users import router as users_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(platform_router)
v1_router.include_router(auth_router)
v1_router.include_router(site_router)
v1_router.include_router(users_router)
