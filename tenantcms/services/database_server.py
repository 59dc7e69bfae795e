"""Server-level database administration — create, drop and locate tenant databases."""

from __future__ import annotations

import logging
import os
import re

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

logger = logging.getLogger(__name__)

_SAFE_NAME = re.compile(r"^[A-Za-z0-9_]{1,63}$")


class DatabaseServer:
    """Admin operations against the server that hosts tenant databases.

    Supports PostgreSQL and MySQL servers, and SQLite where the configured
    database part of the URL is a directory holding one file per tenant.
    """

    def __init__(self, server_url: str) -> None:
        self._url: URL = make_url(server_url)
        self._admin_engine: AsyncEngine | None = None

    @property
    def backend(self) -> str:
        return self._url.get_backend_name()

    def url_for(self, database_name: str) -> URL:
        _check_name(database_name)
        if self.backend == "sqlite":
            return self._url.set(database=self._sqlite_path(database_name))
        return self._url.set(database=database_name)

    async def database_exists(self, database_name: str) -> bool:
        _check_name(database_name)
        if self.backend == "sqlite":
            return os.path.exists(self._sqlite_path(database_name))

        if self.backend == "postgresql":
            stmt = text("SELECT 1 FROM pg_database WHERE datname = :name")
        else:
            stmt = text("SELECT 1 FROM information_schema.schemata WHERE schema_name = :name")
        async with self._admin().connect() as conn:
            result = await conn.execute(stmt, {"name": database_name})
            return result.first() is not None

    async def create_database(self, database_name: str) -> bool:
        """Create the database. Returns False if it already existed."""
        _check_name(database_name)
        if await self.database_exists(database_name):
            logger.info("Database %s already exists", database_name)
            return False

        if self.backend == "sqlite":
            os.makedirs(os.path.dirname(self._sqlite_path(database_name)), exist_ok=True)
            with open(self._sqlite_path(database_name), "a"):
                pass
        elif self.backend == "postgresql":
            await self._execute(f'CREATE DATABASE "{database_name}" ENCODING \'UTF8\'')
        else:
            await self._execute(
                f"CREATE DATABASE IF NOT EXISTS `{database_name}` "
                "CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
            )
        logger.info("Tenant database created: %s", database_name)
        return True

    async def drop_database(self, database_name: str) -> None:
        _check_name(database_name)
        if self.backend == "sqlite":
            path = self._sqlite_path(database_name)
            for candidate in (path, f"{path}-wal", f"{path}-shm", f"{path}-journal"):
                if os.path.exists(candidate):
                    os.remove(candidate)
        elif self.backend == "postgresql":
            await self._execute(f'DROP DATABASE IF EXISTS "{database_name}" WITH (FORCE)')
        else:
            await self._execute(f"DROP DATABASE IF EXISTS `{database_name}`")
        logger.info("Tenant database dropped: %s", database_name)

    async def dispose(self) -> None:
        if self._admin_engine is not None:
            await self._admin_engine.dispose()
            self._admin_engine = None

    # ── Internals ────────────────────────────────────────────

    def _sqlite_path(self, database_name: str) -> str:
        return os.path.join(self._url.database or ".", f"{database_name}.db")

    def _admin(self) -> AsyncEngine:
        if self._admin_engine is None:
            self._admin_engine = create_async_engine(
                self._url,
                isolation_level="AUTOCOMMIT",
                pool_size=2,
                max_overflow=0,
                pool_timeout=30,
                pool_pre_ping=True,
            )
        return self._admin_engine

    async def _execute(self, statement: str) -> None:
        async with self._admin().connect() as conn:
            await conn.execute(text(statement))


def _check_name(database_name: str) -> None:
    # Names are interpolated into DDL; only derived identifiers are allowed.
    if not _SAFE_NAME.match(database_name):
        raise ValueError(f"Illegal database name: {database_name!r}")
