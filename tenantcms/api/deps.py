"""FastAPI dependencies for tenant resolution, tenant databases and authentication."""

import uuid
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantcms.core.exceptions import FeatureNotAvailable
from tenantcms.core.platform import Platform
from tenantcms.core.security import decode_jwt, verify_platform_key
from tenantcms.services import accounts
from tenantcms.services.resolver import TenantContext

bearer_scheme = HTTPBearer()


def get_platform(request: Request) -> Platform:
    return request.app.state.platform


PlatformDep = Annotated[Platform, Depends(get_platform)]


# ── Tenant resolution ────────────────────────────────────────

async def get_current_tenant(request: Request, platform: PlatformDep) -> TenantContext:
    """Strict resolution from the Host header; typed errors propagate."""
    return await platform.resolver.resolve(request.headers.get("host"))


async def get_optional_tenant(request: Request, platform: PlatformDep) -> TenantContext | None:
    return await platform.resolver.resolve_optional(request.headers.get("host"))


CurrentTenant = Annotated[TenantContext, Depends(get_current_tenant)]
OptionalTenant = Annotated[TenantContext | None, Depends(get_optional_tenant)]


async def get_tenant_session(
    tenant: CurrentTenant, platform: PlatformDep
) -> AsyncGenerator[AsyncSession, None]:
    """A session on the resolved tenant's own database."""
    connection = await platform.registry.acquire(tenant.tenant_id)
    async with connection.session() as session:
        yield session


TenantDB = Annotated[AsyncSession, Depends(get_tenant_session)]


# ── Authentication ───────────────────────────────────────────

class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("tenant_id", "user_id", "user_role")

    def __init__(self, tenant_id: uuid.UUID, user_id: uuid.UUID, user_role: str) -> None:
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.user_role = user_role


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
    tenant: CurrentTenant,
) -> AuthContext:
    """Decode a tenant user JWT; it must have been issued by the resolved tenant."""
    try:
        payload = decode_jwt(credentials.credentials)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc

    try:
        auth = AuthContext(
            tenant_id=uuid.UUID(payload["tid"]),
            user_id=uuid.UUID(payload["sub"]),
            user_role=payload.get("role", "contributor"),
        )
    except (KeyError, ValueError) as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        ) from exc

    if auth.tenant_id != tenant.tenant_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token was not issued for this site",
        )
    return auth


Auth = Annotated[AuthContext, Depends(get_auth_context)]


async def require_platform_admin(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> None:
    if not verify_platform_key(credentials.credentials):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid platform API key",
        )


PlatformAdmin = Depends(require_platform_admin)


# ── Plan enforcement ─────────────────────────────────────────

def enforce_limit(resource: str):
    """Dependency factory: 402 once the tenant holds its plan maximum of ``resource``."""

    async def check(tenant: CurrentTenant, session: TenantDB) -> None:
        await accounts.enforce_limit(session, tenant.limits, resource)

    return Depends(check)


def require_feature(feature: str):
    """Dependency factory: 403 unless the tenant's plan includes ``feature``."""

    async def check(tenant: CurrentTenant) -> None:
        if not tenant.has_feature(feature):
            raise FeatureNotAvailable(feature)

    return Depends(check)
