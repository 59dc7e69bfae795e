"""Tenant lifecycle worker tasks — provisioning, deprovisioning and domain moves.

Each task returns a plain dict so results survive ARQ's serialization.
Typed lifecycle failures are reported as ``{"ok": False, "error": {...}}``
with the same body the API would have rendered.
"""

from __future__ import annotations

import logging
import uuid

from tenantcms.core.exceptions import TenantError
from tenantcms.core.platform import Platform
from tenantcms.core.security import encrypt_value
from tenantcms.models.tenant import TenantCreate, TenantRead

logger = logging.getLogger(__name__)

# How long an unread temporary admin password stays retrievable.
CREDENTIAL_TTL_SECONDS = 3600


def credential_key(job_id: str) -> str:
    return f"tenantcms:credential:{job_id}"


def _failure(exc: TenantError) -> dict:
    return {"ok": False, "status_code": exc.status_code, "error": exc.to_dict()}


async def provision_tenant_job(ctx: dict, request: dict, tenant_id: str | None = None) -> dict:
    """ARQ task: run the full provisioning pipeline for one tenant.

    The temporary admin password is never part of the job result; it is
    stored Fernet-encrypted under ``credential_key(job_id)`` and deleted on
    first read.
    """
    platform: Platform = ctx["platform"]
    body = TenantCreate.model_validate(request)
    try:
        result = await platform.orchestrator.provision(
            body, tenant_id=uuid.UUID(tenant_id) if tenant_id else None
        )
    except TenantError as exc:
        logger.error("Provisioning job for %s failed: %s", body.domain, exc.message)
        return _failure(exc)

    await ctx["redis"].set(
        credential_key(ctx["job_id"]),
        encrypt_value(result.admin.temporary_password),
        ex=CREDENTIAL_TTL_SECONDS,
    )
    return {
        "ok": True,
        "tenant": TenantRead.from_tenant(result.tenant).model_dump(mode="json"),
        "admin_email": result.admin.email,
        "applied_steps": result.applied_steps,
        "skipped_steps": result.skipped_steps,
    }


async def deprovision_tenant_job(ctx: dict, tenant_id: str, revoke_certificate: bool = True) -> dict:
    platform: Platform = ctx["platform"]
    try:
        result = await platform.orchestrator.deprovision(
            uuid.UUID(tenant_id), revoke_certificate=revoke_certificate
        )
    except TenantError as exc:
        logger.error("Deprovisioning job for %s failed: %s", tenant_id, exc.message)
        return _failure(exc)
    return {
        "ok": True,
        "tenant_id": str(result.tenant_id),
        "domain": result.domain,
        "cleanup_complete": result.cleanup_complete,
        "cleanup_failed_steps": result.cleanup_failed_steps,
    }


async def migrate_tenant_domain_job(ctx: dict, tenant_id: str, new_domain: str) -> dict:
    platform: Platform = ctx["platform"]
    try:
        result = await platform.orchestrator.migrate_domain(uuid.UUID(tenant_id), new_domain)
    except TenantError as exc:
        logger.error("Domain migration job for %s failed: %s", tenant_id, exc.message)
        return _failure(exc)
    return {
        "ok": True,
        "tenant": TenantRead.from_tenant(result.tenant).model_dump(mode="json"),
        "old_domain": result.old_domain,
        "new_domain": result.new_domain,
        "cleanup_failed_steps": result.cleanup_failed_steps,
    }


async def evict_idle_connections(ctx: dict) -> dict:
    """Periodic job: close tenant connection pools nobody has used lately."""
    platform: Platform = ctx["platform"]
    evicted = await platform.registry.evict_idle(platform.settings.tenant_idle_eviction_seconds)
    return {"evicted": len(evicted)}
