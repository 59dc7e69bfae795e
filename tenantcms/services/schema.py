"""Create the tenant tables and indexes in a tenant database, idempotently."""

import logging

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlmodel import SQLModel

from tenantcms.models import TENANT_TABLES

logger = logging.getLogger(__name__)


async def ensure_schema(engine: AsyncEngine) -> None:
    """Create any missing tenant tables/indexes. Safe to call repeatedly."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=TENANT_TABLES, checkfirst=True)
    logger.debug("Tenant schema ensured on %s", engine.url.database)


async def existing_tables(engine: AsyncEngine) -> set[str]:
    async with engine.connect() as conn:
        names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
    return set(names)
