"""Site endpoint — the resolved tenant's identity, plan limits and usage."""

from datetime import datetime

from fastapi import APIRouter
from pydantic import BaseModel

from tenantcms.api.deps import CurrentTenant, OptionalTenant, TenantDB
from tenantcms.core.cache import usage_cache
from tenantcms.models.tenant import TenantLimits
from tenantcms.services.accounts import usage as count_usage, usage_percentage

router = APIRouter(prefix="/site", tags=["site"])

# usage key -> TenantLimits attribute
_LIMIT_FIELDS = {
    "users": "max_users",
    "articles": "max_articles",
    "categories": "max_categories",
    "tags": "max_tags",
}


class UsageItem(BaseModel):
    used: int
    limit: int
    percentage: float


class SiteResponse(BaseModel):
    id: str
    name: str
    domain: str
    subdomain: str | None
    plan: str
    trial_ends_at: datetime | None
    limits: TenantLimits
    features: dict[str, bool]
    usage: dict[str, UsageItem]


class ResolveResponse(BaseModel):
    resolved: bool
    name: str | None = None
    domain: str | None = None


@router.get("", response_model=SiteResponse)
async def get_site(tenant: CurrentTenant, session: TenantDB) -> SiteResponse:
    key = (tenant.tenant_id, "usage")
    counts = usage_cache.get(key)
    if counts is None:
        counts = await count_usage(session)
        usage_cache.put(key, counts)

    usage = {}
    for name, attr in _LIMIT_FIELDS.items():
        limit = getattr(tenant.limits, attr)
        used = counts[name]
        usage[name] = UsageItem(
            used=used,
            limit=limit,
            percentage=usage_percentage(used, limit),
        )

    return SiteResponse(
        id=str(tenant.tenant_id),
        name=tenant.name,
        domain=tenant.domain,
        subdomain=tenant.subdomain,
        plan=tenant.plan,
        trial_ends_at=tenant.trial_ends_at,
        limits=tenant.limits,
        features=tenant.features,
        usage=usage,
    )


@router.get("/resolve", response_model=ResolveResponse)
async def resolve_site(tenant: OptionalTenant) -> ResolveResponse:
    """Reachable on any host; reports whether it maps to an active tenant."""
    if tenant is None:
        return ResolveResponse(resolved=False)
    return ResolveResponse(resolved=True, name=tenant.name, domain=tenant.domain)
