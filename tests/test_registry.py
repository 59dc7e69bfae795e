"""Tests for the per-tenant connection registry and the schema initializer."""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlmodel import select

from conftest import DB_PREFIX
from tenantcms.core.exceptions import DatabaseUnreachable, UnknownTenantDatabase
from tenantcms.models import TENANT_TABLES
from tenantcms.models.user import User
from tenantcms.services.accounts import create_user
from tenantcms.services.registry import ConnectionRegistry
from tenantcms.services.schema import ensure_schema, existing_tables


class CountingFactory:
    """Wraps create_async_engine and counts how many engines were built."""

    def __init__(self) -> None:
        self.created = 0

    def __call__(self, url, **kwargs):
        self.created += 1
        return create_async_engine(url, **kwargs)


async def _provisioned_database(registry, server) -> uuid.UUID:
    tenant_id = uuid.uuid4()
    await server.create_database(registry.database_name(tenant_id))
    return tenant_id


def _mock_engine() -> MagicMock:
    engine = MagicMock()
    engine.connect.return_value.__aenter__.return_value.execute = AsyncMock()
    engine.dispose = AsyncMock()
    return engine


def test_database_name_is_deterministic(registry):
    tenant_id = uuid.UUID("12345678-1234-5678-1234-567812345678")
    assert registry.database_name(tenant_id) == f"{DB_PREFIX}12345678_1234_5678_1234_567812345678"


@pytest.mark.asyncio
async def test_concurrent_acquire_establishes_once(server):
    factory = CountingFactory()
    registry = ConnectionRegistry(server, database_prefix=DB_PREFIX, engine_factory=factory)
    tenant_id = await _provisioned_database(registry, server)

    handles = await asyncio.gather(*(registry.acquire(tenant_id) for _ in range(20)))

    assert factory.created == 1
    assert len({id(h) for h in handles}) == 1
    assert len(registry) == 1
    await registry.close_all()


@pytest.mark.asyncio
async def test_schema_initialized_once_per_handle(server):
    calls = []

    async def initializer(engine):
        calls.append(engine)
        await ensure_schema(engine)

    registry = ConnectionRegistry(server, database_prefix=DB_PREFIX, schema_initializer=initializer)
    tenant_id = await _provisioned_database(registry, server)

    await registry.acquire(tenant_id)
    await registry.acquire(tenant_id)
    assert len(calls) == 1

    await registry.close(tenant_id)
    await registry.acquire(tenant_id)
    assert len(calls) == 2
    await registry.close_all()


@pytest.mark.asyncio
async def test_distinct_tenants_get_distinct_handles(registry, server):
    first = await _provisioned_database(registry, server)
    second = await _provisioned_database(registry, server)

    a = await registry.acquire(first)
    b = await registry.acquire(second)
    assert a.engine is not b.engine

    async with a.session() as session:
        await create_user(
            session, email="only@first.example.com", password="password123",
            first_name="Only", last_name="First",
        )
    async with b.session() as session:
        result = await session.execute(select(User))
        assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_unknown_database_is_typed_and_not_cached(registry, server):
    tenant_id = uuid.uuid4()

    with pytest.raises(UnknownTenantDatabase):
        await registry.acquire(tenant_id)
    assert tenant_id not in registry

    # Retried from scratch once the database exists.
    await server.create_database(registry.database_name(tenant_id))
    handle = await registry.acquire(tenant_id)
    assert handle.tenant_id == tenant_id


@pytest.mark.asyncio
async def test_unreachable_server_is_typed(registry, server, monkeypatch):
    async def refused(name):
        raise OSError("connection refused")

    monkeypatch.setattr(server, "database_exists", refused)
    with pytest.raises(DatabaseUnreachable) as excinfo:
        await registry.acquire(uuid.uuid4())
    assert excinfo.value.status_code == 503
    assert excinfo.value.to_dict()["retryable"] is True
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_failed_schema_disposes_and_retries(server):
    attempts = []

    async def flaky(engine):
        attempts.append(engine)
        if len(attempts) == 1:
            raise OSError("transient")
        await ensure_schema(engine)

    registry = ConnectionRegistry(server, database_prefix=DB_PREFIX, schema_initializer=flaky)
    tenant_id = await _provisioned_database(registry, server)

    with pytest.raises(DatabaseUnreachable):
        await registry.acquire(tenant_id)
    assert tenant_id not in registry

    await registry.acquire(tenant_id)
    assert len(attempts) == 2
    await registry.close_all()


@pytest.mark.asyncio
async def test_unexpected_initializer_error_disposes_engine(server):
    engine = _mock_engine()

    async def broken(engine):
        raise RuntimeError("bad migration")

    registry = ConnectionRegistry(
        server, database_prefix=DB_PREFIX, schema_initializer=broken, engine_factory=lambda url, **kw: engine,
    )
    tenant_id = await _provisioned_database(registry, server)

    with pytest.raises(RuntimeError):
        await registry.acquire(tenant_id)

    engine.dispose.assert_awaited_once()
    assert tenant_id not in registry


@pytest.mark.asyncio
async def test_cancelled_establishment_disposes_engine(server):
    engine = _mock_engine()
    entered = asyncio.Event()

    async def stuck(engine):
        entered.set()
        await asyncio.Event().wait()

    registry = ConnectionRegistry(
        server, database_prefix=DB_PREFIX, schema_initializer=stuck, engine_factory=lambda url, **kw: engine,
    )
    tenant_id = await _provisioned_database(registry, server)

    task = asyncio.create_task(registry.acquire(tenant_id))
    await entered.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    engine.dispose.assert_awaited_once()
    assert tenant_id not in registry


@pytest.mark.asyncio
async def test_slow_tenant_does_not_block_others(server, monkeypatch):
    registry = ConnectionRegistry(server, database_prefix=DB_PREFIX, connect_timeout=30.0)
    slow = await _provisioned_database(registry, server)
    fast = await _provisioned_database(registry, server)
    slow_name = registry.database_name(slow)
    entered = asyncio.Event()
    release = asyncio.Event()
    real_exists = server.database_exists

    async def database_exists(name):
        if name == slow_name:
            entered.set()
            await release.wait()
        return await real_exists(name)

    monkeypatch.setattr(server, "database_exists", database_exists)
    pending = asyncio.create_task(registry.acquire(slow))
    await entered.wait()

    handle = await asyncio.wait_for(registry.acquire(fast), timeout=5)
    assert handle.tenant_id == fast
    assert not pending.done()

    release.set()
    assert (await pending).tenant_id == slow
    await registry.close_all()


@pytest.mark.asyncio
async def test_close_and_evict_idle(registry, server):
    first = await _provisioned_database(registry, server)
    second = await _provisioned_database(registry, server)
    await registry.acquire(first)
    await registry.acquire(second)

    assert await registry.close(first) is True
    assert await registry.close(first) is False
    assert first not in registry

    assert await registry.evict_idle(3600) == []
    assert await registry.evict_idle(0) == [second]
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_ping(registry, server):
    tenant_id = await _provisioned_database(registry, server)
    assert await registry.ping(tenant_id) is True
    assert await registry.ping(uuid.uuid4()) is False


@pytest.mark.asyncio
async def test_ensure_schema_is_idempotent(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'schema.db'}")
    expected = {t.name for t in TENANT_TABLES}

    await ensure_schema(engine)
    first = await existing_tables(engine)
    await ensure_schema(engine)
    second = await existing_tables(engine)

    assert expected <= first
    assert first == second
    assert "tenants" not in first
    await engine.dispose()
