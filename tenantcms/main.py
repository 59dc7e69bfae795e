"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tenantcms.api.v1 import v1_router
from tenantcms.core.config import get_settings
from tenantcms.core.database import async_session_factory, init_db
from tenantcms.core.exceptions import TenantError
from tenantcms.core.platform import build_platform

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    # Startup: ensure directory tables exist (use Alembic in production)
    await init_db()
    app.state.platform = build_platform(settings, async_session_factory)
    yield
    await app.state.platform.close()


app = FastAPI(
    title="TenantCMS",
    version="0.1.0",
    description="Multi-tenant news CMS platform with automated tenant provisioning",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
_settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Errors ───────────────────────────────────────────────────
@app.exception_handler(TenantError)
async def tenant_error_handler(request: Request, exc: TenantError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
