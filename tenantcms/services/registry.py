"""Connection registry — process-local cache of live per-tenant database handles.

Each tenant gets its own small connection pool, established lazily on first
use. Establishment is serialized per tenant id (never globally), so a slow
or failing database for one tenant does not stall requests for another.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from tenantcms.core.config import Settings
from tenantcms.core.exceptions import DatabaseUnreachable, UnknownTenantDatabase
from tenantcms.core.locks import KeyedLocks
from tenantcms.models.tenant import database_name_for
from tenantcms.services.database_server import DatabaseServer
from tenantcms.services.schema import ensure_schema

logger = logging.getLogger(__name__)

SchemaInitializer = Callable[[AsyncEngine], Awaitable[None]]


@dataclass
class TenantConnection:
    """A live pooled handle plus its schema-bound session factory."""

    tenant_id: uuid.UUID
    database_name: str
    engine: AsyncEngine
    session_factory: sessionmaker
    last_used: float = field(default_factory=time.monotonic)

    def session(self) -> AsyncSession:
        self.last_used = time.monotonic()
        return self.session_factory()


class ConnectionRegistry:
    def __init__(
        self,
        server: DatabaseServer,
        *,
        database_prefix: str,
        pool_size: int = 5,
        max_overflow: int = 0,
        pool_timeout: float = 30.0,
        pool_recycle: int = 1800,
        connect_timeout: float = 10.0,
        schema_initializer: SchemaInitializer = ensure_schema,
        engine_factory: Callable[..., AsyncEngine] = create_async_engine,
    ) -> None:
        self._server = server
        self._prefix = database_prefix
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._pool_timeout = pool_timeout
        self._pool_recycle = pool_recycle
        self._connect_timeout = connect_timeout
        self._schema_initializer = schema_initializer
        self._engine_factory = engine_factory
        self._entries: dict[uuid.UUID, TenantConnection] = {}
        self._locks = KeyedLocks()

    @classmethod
    def from_settings(cls, settings: Settings, server: DatabaseServer) -> ConnectionRegistry:
        return cls(
            server,
            database_prefix=settings.tenant_db_prefix,
            pool_size=settings.tenant_pool_size,
            max_overflow=settings.tenant_pool_max_overflow,
            pool_timeout=settings.tenant_pool_timeout,
            pool_recycle=settings.tenant_pool_recycle,
            connect_timeout=settings.tenant_connect_timeout,
        )

    def database_name(self, tenant_id: uuid.UUID) -> str:
        return database_name_for(tenant_id, self._prefix)

    async def acquire(self, tenant_id: uuid.UUID) -> TenantConnection:
        """Return the cached handle for a tenant, establishing it if needed.

        Concurrent callers for the same tenant wait on a single establishment.
        A failed establishment is never cached; the next call retries.
        """
        entry = self._entries.get(tenant_id)
        if entry is None:
            async with self._locks.hold(tenant_id):
                entry = self._entries.get(tenant_id)
                if entry is None:
                    entry = await self._establish(tenant_id)
                    self._entries[tenant_id] = entry
        entry.last_used = time.monotonic()
        return entry

    async def close(self, tenant_id: uuid.UUID) -> bool:
        async with self._locks.hold(tenant_id):
            entry = self._entries.pop(tenant_id, None)
            if entry is None:
                return False
            await entry.engine.dispose()
        logger.info("Tenant DB connection closed for %s", tenant_id)
        return True

    async def close_all(self) -> None:
        for tenant_id in list(self._entries):
            await self.close(tenant_id)

    async def evict_idle(self, max_idle_seconds: float) -> list[uuid.UUID]:
        cutoff = time.monotonic() - max_idle_seconds
        idle = [tid for tid, entry in self._entries.items() if entry.last_used < cutoff]
        for tenant_id in idle:
            await self.close(tenant_id)
        if idle:
            logger.info("Evicted %d idle tenant connections", len(idle))
        return idle

    async def ping(self, tenant_id: uuid.UUID) -> bool:
        """True if the tenant's database answers a trivial query."""
        try:
            entry = await self.acquire(tenant_id)
            async with entry.engine.connect() as conn:
                await asyncio.wait_for(conn.execute(text("SELECT 1")), self._connect_timeout)
        except (DatabaseUnreachable, UnknownTenantDatabase, SQLAlchemyError, OSError, TimeoutError):
            logger.warning("Database ping failed for tenant %s", tenant_id, exc_info=True)
            return False
        return True

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ── Internals ────────────────────────────────────────────

    async def _establish(self, tenant_id: uuid.UUID) -> TenantConnection:
        database_name = self.database_name(tenant_id)
        try:
            exists = await asyncio.wait_for(
                self._server.database_exists(database_name), self._connect_timeout
            )
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            logger.error("Unable to reach database server for tenant %s: %s", tenant_id, exc)
            raise DatabaseUnreachable(tenant_id, exc) from exc
        if not exists:
            raise UnknownTenantDatabase(tenant_id, database_name)

        engine = self._engine_factory(self._server.url_for(database_name), **self._engine_kwargs())
        try:
            async with engine.connect() as conn:
                await asyncio.wait_for(conn.execute(text("SELECT 1")), self._connect_timeout)
            await self._schema_initializer(engine)
        except (SQLAlchemyError, OSError, TimeoutError) as exc:
            await engine.dispose()
            logger.error("Unable to connect to tenant database %s: %s", database_name, exc)
            raise DatabaseUnreachable(tenant_id, exc) from exc
        except BaseException:
            # Cancellation and initializer failures; nothing was cached.
            await engine.dispose()
            raise

        logger.info("Tenant DB connection established for %s", tenant_id)
        return TenantConnection(
            tenant_id=tenant_id,
            database_name=database_name,
            engine=engine,
            session_factory=sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
        )

    def _engine_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "echo": False,
            "pool_size": self._pool_size,
            "max_overflow": self._max_overflow,
            "pool_timeout": self._pool_timeout,
            "pool_recycle": self._pool_recycle,
            "pool_pre_ping": True,
        }
        if self._server.backend == "postgresql":
            kwargs["connect_args"] = {"timeout": self._connect_timeout}
        return kwargs
