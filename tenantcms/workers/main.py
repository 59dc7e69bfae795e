"""ARQ worker entrypoint."""

import asyncio
import logging

from arq import cron
from arq.connections import RedisSettings

from tenantcms.core.config import get_settings
from tenantcms.workers.lifecycle import (
    deprovision_tenant_job,
    evict_idle_connections,
    migrate_tenant_domain_job,
    provision_tenant_job,
)


def redis_settings() -> RedisSettings:
    """Parse REDIS_URL into ARQ RedisSettings."""
    return RedisSettings.from_dsn(get_settings().redis_url)


async def startup(ctx: dict) -> None:
    """Called when the worker starts."""
    from tenantcms.core.database import async_session_factory, init_db
    from tenantcms.core.platform import build_platform

    settings = get_settings()
    logging.basicConfig(level=settings.log_level)
    await init_db()
    ctx["platform"] = build_platform(settings, async_session_factory)


async def shutdown(ctx: dict) -> None:
    """Called when the worker shuts down."""
    platform = ctx.get("platform")
    if platform is not None:
        await platform.close()


class WorkerSettings:
    """ARQ worker configuration."""
    functions = [provision_tenant_job, deprovision_tenant_job, migrate_tenant_domain_job]
    cron_jobs = [cron(evict_idle_connections, minute={0, 15, 30, 45})]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = redis_settings()
    max_jobs = 10
    job_timeout = 900  # certificate issuance and propagation waits are slow
    keep_result = 3600


if __name__ == "__main__":
    from arq import run_worker
    asyncio.run(run_worker(WorkerSettings))  # type: ignore[arg-type]
