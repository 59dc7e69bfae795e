"""Platform administration — tenant lifecycle, directory management and job polling.

Every route requires the platform API key. Lifecycle operations run in the
ARQ worker and answer ``202`` with a job id, unless ``?wait=true`` asks for the
final result inside the request.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

from arq.connections import ArqRedis, create_pool
from arq.constants import result_key_prefix
from arq.jobs import Job, JobStatus
from fastapi import APIRouter, HTTPException, Query, Response, status
from pydantic import BaseModel, Field

from tenantcms.api.deps import PlatformAdmin, PlatformDep
from tenantcms.core.exceptions import DomainExists, TenantBusy
from tenantcms.core.security import decrypt_value
from tenantcms.models.base import new_uuid
from tenantcms.models.tenant import (
    BulkAction,
    BulkOperation,
    TenantCreate,
    TenantLimits,
    TenantPlan,
    TenantRead,
    TenantStatus,
    TenantStatusUpdate,
    TenantUpdate,
)
from tenantcms.services.accounts import content_stats, usage, usage_percentages
from tenantcms.workers.lifecycle import credential_key
from tenantcms.workers.main import redis_settings

logger = logging.getLogger(__name__)
audit = logging.getLogger("tenantcms.audit")

router = APIRouter(prefix="/platform", tags=["platform"], dependencies=[PlatformAdmin])


# ── Schemas ──────────────────────────────────────────────────

class JobAccepted(BaseModel):
    job_id: str
    tenant_id: uuid.UUID
    status: str = "queued"


class ProvisionResponse(BaseModel):
    tenant: TenantRead
    admin_email: str
    temporary_password: str = Field(description="Shown once; it is not stored anywhere")
    applied_steps: list[str]
    skipped_steps: list[str]


class TenantList(BaseModel):
    items: list[TenantRead]
    total: int
    page: int
    limit: int
    pages: int


class DomainUpdate(BaseModel):
    domain: str = Field(
        max_length=255,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]\.[a-zA-Z]{2,}$",
    )


class MigrationResponse(BaseModel):
    tenant: TenantRead
    old_domain: str
    new_domain: str
    cleanup_failed_steps: list[str]


class DeprovisionResponse(BaseModel):
    tenant_id: uuid.UUID
    domain: str
    cleanup_complete: bool
    cleanup_failed_steps: list[str]


class TenantStatusResponse(BaseModel):
    tenant_id: uuid.UUID
    domain: str
    directory_status: TenantStatus
    database_reachable: bool
    dns_record: bool | None
    proxy_configured: bool | None
    certificate_valid: bool | None
    domain_reachable: bool | None


class BulkItem(BaseModel):
    tenant_id: uuid.UUID
    success: bool
    status: TenantStatus | None = None
    cleanup_failed_steps: list[str] = []
    error: dict[str, Any] | None = None


class BulkResponse(BaseModel):
    action: BulkAction
    succeeded: int
    failed: int
    results: list[BulkItem]


class ContentStats(BaseModel):
    published_articles: int
    draft_articles: int
    total_views: int
    recent_activity: int


class PlanInfo(BaseModel):
    current_plan: TenantPlan
    status: TenantStatus
    trial_ends_at: datetime | None


class AnalyticsResponse(BaseModel):
    tenant_id: uuid.UUID
    usage: dict[str, int]
    limits: TenantLimits
    usage_percentage: dict[str, float]
    content_stats: ContentStats
    plan_info: PlanInfo


class JobResponse(BaseModel):
    job_id: str
    status: str
    result: dict[str, Any] | None = None
    temporary_password: str | None = None


# ── Job queue helpers ────────────────────────────────────────

async def _arq_pool() -> ArqRedis:
    return await create_pool(redis_settings())


async def _enqueue(function: str, job_id: str, **kwargs: Any) -> None:
    """Enqueue under a deterministic id; a live job with that id means busy."""
    redis = await _arq_pool()
    try:
        if await Job(job_id, redis).status() == JobStatus.complete:
            # A finished job's stored result would block re-enqueueing the id.
            await redis.delete(result_key_prefix + job_id)
        job = await redis.enqueue_job(function, _job_id=job_id, **kwargs)
    finally:
        await redis.aclose()
    if job is None:
        raise TenantBusy(job_id)
    logger.info("Enqueued %s as job %s", function, job_id)


# ── Lifecycle ────────────────────────────────────────────────

@router.post(
    "/tenants",
    response_model=ProvisionResponse | JobAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Provision a new tenant",
)
async def provision_tenant(
    body: TenantCreate,
    platform: PlatformDep,
    response: Response,
    wait: bool = False,
) -> ProvisionResponse | JobAccepted:
    """Create a tenant with its database, DNS, certificate and proxy config.

    With ``wait=true`` the temporary admin password is in the response; it is
    never stored and cannot be shown again.
    """
    if await platform.directory.domain_taken(body.domain):
        raise DomainExists(body.domain, body.subdomain)

    tenant_id = new_uuid()
    if not wait:
        job_id = f"provision:{body.domain.lower()}"
        await _enqueue(
            "provision_tenant_job",
            job_id,
            request=body.model_dump(mode="json"),
            tenant_id=str(tenant_id),
        )
        return JobAccepted(job_id=job_id, tenant_id=tenant_id)

    result = await platform.orchestrator.provision(body, tenant_id=tenant_id)
    response.status_code = status.HTTP_201_CREATED
    return ProvisionResponse(
        tenant=TenantRead.from_tenant(result.tenant),
        admin_email=result.admin.email,
        temporary_password=result.admin.temporary_password,
        applied_steps=result.applied_steps,
        skipped_steps=result.skipped_steps,
    )


@router.put(
    "/tenants/{tenant_id}/domain",
    response_model=MigrationResponse | JobAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def migrate_tenant_domain(
    tenant_id: uuid.UUID,
    body: DomainUpdate,
    platform: PlatformDep,
    response: Response,
    wait: bool = False,
) -> MigrationResponse | JobAccepted:
    await platform.directory.require(tenant_id)
    if not wait:
        job_id = f"migrate:{tenant_id}"
        await _enqueue(
            "migrate_tenant_domain_job", job_id, tenant_id=str(tenant_id), new_domain=body.domain,
        )
        return JobAccepted(job_id=job_id, tenant_id=tenant_id)

    result = await platform.orchestrator.migrate_domain(tenant_id, body.domain)
    response.status_code = status.HTTP_200_OK
    return MigrationResponse(
        tenant=TenantRead.from_tenant(result.tenant),
        old_domain=result.old_domain,
        new_domain=result.new_domain,
        cleanup_failed_steps=result.cleanup_failed_steps,
    )


@router.delete(
    "/tenants/{tenant_id}",
    response_model=DeprovisionResponse | JobAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def deprovision_tenant(
    tenant_id: uuid.UUID,
    platform: PlatformDep,
    response: Response,
    wait: bool = False,
    revoke_certificate: bool = True,
) -> DeprovisionResponse | JobAccepted:
    await platform.directory.require(tenant_id)
    if not wait:
        job_id = f"deprovision:{tenant_id}"
        await _enqueue(
            "deprovision_tenant_job",
            job_id,
            tenant_id=str(tenant_id),
            revoke_certificate=revoke_certificate,
        )
        return JobAccepted(job_id=job_id, tenant_id=tenant_id)

    result = await platform.orchestrator.deprovision(tenant_id, revoke_certificate=revoke_certificate)
    response.status_code = status.HTTP_200_OK
    return DeprovisionResponse(
        tenant_id=result.tenant_id,
        domain=result.domain,
        cleanup_complete=result.cleanup_complete,
        cleanup_failed_steps=result.cleanup_failed_steps,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse)
async def get_job(job_id: str) -> JobResponse:
    """Poll a lifecycle job. A provisioning password is returned on first read only."""
    redis = await _arq_pool()
    try:
        job = Job(job_id, redis)
        job_status = await job.status()
        if job_status == JobStatus.not_found:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")

        result: dict[str, Any] | None = None
        password: str | None = None
        if job_status == JobStatus.complete:
            info = await job.result_info()
            if info is not None and info.success:
                result = info.result
            elif info is not None:
                result = {"ok": False, "error": {"detail": str(info.result), "code": "JOB_FAILED"}}
            if result and result.get("ok") and job_id.startswith("provision:"):
                encrypted = await redis.getdel(credential_key(job_id))
                if encrypted is not None:
                    password = decrypt_value(encrypted.decode())
    finally:
        await redis.aclose()

    return JobResponse(job_id=job_id, status=job_status.value, result=result, temporary_password=password)


# ── Directory ────────────────────────────────────────────────

@router.get("/tenants", response_model=TenantList)
async def list_tenants(
    platform: PlatformDep,
    status_filter: TenantStatus | None = Query(default=None, alias="status"),
    plan: TenantPlan | None = None,
    search: str | None = Query(default=None, max_length=100),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
) -> TenantList:
    items, total = await platform.directory.list_tenants(
        status=status_filter, plan=plan, search=search, offset=(page - 1) * limit, limit=limit,
    )
    return TenantList(
        items=[TenantRead.from_tenant(t) for t in items],
        total=total,
        page=page,
        limit=limit,
        pages=(total + limit - 1) // limit,
    )


@router.get("/tenants/{tenant_id}", response_model=TenantRead)
async def get_tenant(tenant_id: uuid.UUID, platform: PlatformDep) -> TenantRead:
    return TenantRead.from_tenant(await platform.directory.require(tenant_id))


@router.get("/tenants/{tenant_id}/status", response_model=TenantStatusResponse)
async def get_tenant_status(tenant_id: uuid.UUID, platform: PlatformDep) -> TenantStatusResponse:
    report = await platform.orchestrator.status(tenant_id)
    return TenantStatusResponse(
        tenant_id=report.tenant_id,
        domain=report.domain,
        directory_status=report.directory_status,
        database_reachable=report.database_reachable,
        dns_record=report.dns_record,
        proxy_configured=report.proxy_configured,
        certificate_valid=report.certificate_valid,
        domain_reachable=report.domain_reachable,
    )


@router.patch("/tenants/{tenant_id}/status", response_model=TenantRead)
async def update_tenant_status(
    tenant_id: uuid.UUID, body: TenantStatusUpdate, platform: PlatformDep
) -> TenantRead:
    """Suspend, reactivate or deactivate a tenant."""
    tenant = await platform.orchestrator.change_status(tenant_id, body.status)
    return TenantRead.from_tenant(tenant)


@router.put("/tenants/{tenant_id}", response_model=TenantRead)
async def update_tenant(tenant_id: uuid.UUID, body: TenantUpdate, platform: PlatformDep) -> TenantRead:
    """Edit contact details, plan, settings or limits.

    A plan change resets limits and features to the new plan's defaults.
    """
    tenant = await platform.directory.update(tenant_id, body)
    audit.info(
        "tenant.updated id=%s fields=%s",
        tenant_id, sorted(body.model_dump(exclude_none=True)),
    )
    return TenantRead.from_tenant(tenant)


@router.post("/tenants/bulk", response_model=BulkResponse)
async def bulk_tenant_operation(body: BulkOperation, platform: PlatformDep) -> BulkResponse:
    """Suspend, activate or delete several tenants; failures are reported per id."""
    results = await platform.orchestrator.bulk(body.action, body.tenant_ids)
    items = [
        BulkItem(
            tenant_id=r.tenant_id,
            success=r.success,
            status=r.status,
            cleanup_failed_steps=r.cleanup_failed_steps,
            error=r.error,
        )
        for r in results
    ]
    succeeded = sum(1 for item in items if item.success)
    return BulkResponse(
        action=body.action, succeeded=succeeded, failed=len(items) - succeeded, results=items,
    )


@router.get("/tenants/{tenant_id}/analytics", response_model=AnalyticsResponse)
async def get_tenant_analytics(tenant_id: uuid.UUID, platform: PlatformDep) -> AnalyticsResponse:
    tenant = await platform.directory.require(tenant_id)
    limits = tenant.get_limits()
    connection = await platform.registry.acquire(tenant.id)
    async with connection.session() as session:
        counts = await usage(session)
        stats = await content_stats(session)

    return AnalyticsResponse(
        tenant_id=tenant.id,
        usage=counts,
        limits=limits,
        usage_percentage=usage_percentages(counts, limits),
        content_stats=ContentStats(**stats),
        plan_info=PlanInfo(
            current_plan=tenant.plan,
            status=tenant.status,
            trial_ends_at=tenant.trial_ends_at,
        ),
    )
