"""Tenant resolver — maps an inbound Host header to an active tenant."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from tenantcms.core.exceptions import (
    TenantError,
    TenantInactive,
    TenantLookupFailed,
    TenantNotFound,
    TenantSuspended,
    TrialExpired,
)
from tenantcms.models.base import utcnow
from tenantcms.models.tenant import Tenant, TenantLimits, TenantPlan, TenantStatus
from tenantcms.services.directory import TenantDirectory

logger = logging.getLogger(__name__)

# Minimum gap between two last_activity writes for the same tenant.
ACTIVITY_WRITE_INTERVAL = 60.0


@dataclass(frozen=True)
class TenantContext:
    """Resolved tenant identity carried through a request."""

    tenant_id: uuid.UUID
    name: str
    host: str
    domain: str
    subdomain: str | None
    plan: TenantPlan
    database_name: str
    limits: TenantLimits
    features: dict[str, bool] = field(default_factory=dict)
    trial_ends_at: datetime | None = None

    @classmethod
    def from_tenant(cls, tenant: Tenant, host: str) -> TenantContext:
        return cls(
            tenant_id=tenant.id,
            name=tenant.name,
            host=host,
            domain=tenant.domain,
            subdomain=tenant.subdomain,
            plan=TenantPlan(tenant.plan),
            database_name=tenant.database_name,
            limits=tenant.get_limits(),
            features=dict(tenant.get_settings().get("features", {})),
            trial_ends_at=tenant.trial_ends_at,
        )

    def has_feature(self, feature: str) -> bool:
        return self.features.get(feature) is True


def normalize_host(host: str) -> str:
    """Lower-case the host and strip any port and trailing dot."""
    host = host.strip().lower()
    if host.startswith("["):
        # IPv6 literal, e.g. [::1]:8000
        host = host[1:].split("]", 1)[0]
    else:
        host = host.split(":", 1)[0]
    return host.rstrip(".")


class TenantResolver:
    def __init__(
        self,
        directory: TenantDirectory,
        *,
        base_domain: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._directory = directory
        self._base_domain = base_domain.lower().strip(".")
        self._clock = clock
        self._pending: set[asyncio.Task] = set()
        self._last_touch: dict[uuid.UUID, float] = {}

    async def lookup(self, host: str) -> Tenant | None:
        """Find the directory entry for a host, regardless of its status.

        Hosts with three or more labels are first tried as ``<subdomain>.<base>``;
        the full host is then tried as an exact domain.
        """
        labels = host.split(".")
        if len(labels) >= 3 and self._subdomain_applies(labels):
            tenant = await self._directory.find_by_subdomain(labels[0])
            if tenant is not None:
                return tenant
        return await self._directory.find_by_domain(host)

    async def resolve(self, raw_host: str | None) -> TenantContext:
        """Resolve a Host header to an active tenant or raise a typed error."""
        host = normalize_host(raw_host or "")
        if not host:
            raise TenantNotFound("", message="Host header is required")

        try:
            tenant = await self.lookup(host)
        except (SQLAlchemyError, OSError) as exc:
            logger.error("Tenant lookup failed for %s: %s", host, exc)
            raise TenantLookupFailed(
                "Tenant directory is temporarily unavailable", details={"domain": host},
            ) from exc

        # A tenant still provisioning is invisible to traffic.
        if tenant is None or tenant.status == TenantStatus.PROVISIONING:
            raise TenantNotFound(host)
        if tenant.status == TenantStatus.SUSPENDED:
            raise TenantSuspended(host)
        if tenant.status != TenantStatus.ACTIVE:
            raise TenantInactive(host)
        if tenant.is_trial_expired(self._clock()):
            raise TrialExpired(host, tenant.trial_ends_at)

        self._schedule_touch(tenant.id)
        logger.debug("Tenant identified: %s (%s)", tenant.name, host)
        return TenantContext.from_tenant(tenant, host)

    async def resolve_optional(self, raw_host: str | None) -> TenantContext | None:
        """Like resolve(), but any failure yields None instead of an error."""
        try:
            return await self.resolve(raw_host)
        except TenantError as exc:
            logger.debug("Proceeding without tenant context for %r: %s", raw_host, exc.code)
            return None

    async def drain(self) -> None:
        """Wait for outstanding last_activity writes."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

    # ── Internals ────────────────────────────────────────────

    def _subdomain_applies(self, labels: list[str]) -> bool:
        if not self._base_domain:
            return True
        return ".".join(labels[1:]) == self._base_domain

    def _schedule_touch(self, tenant_id: uuid.UUID) -> None:
        now = time.monotonic()
        last = self._last_touch.get(tenant_id)
        if last is not None and now - last < ACTIVITY_WRITE_INTERVAL:
            return
        self._last_touch[tenant_id] = now
        task = asyncio.create_task(self._touch(tenant_id))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _touch(self, tenant_id: uuid.UUID) -> None:
        """Best-effort last_activity update. Never raises."""
        try:
            await self._directory.touch_activity(tenant_id)
        except Exception:
            logger.warning("Failed to record activity for tenant %s", tenant_id, exc_info=True)
