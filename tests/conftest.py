"""Shared test fixtures: file-backed SQLite databases, collaborator fakes and the test client."""

import base64
import os
import tempfile
from collections.abc import AsyncGenerator

# Settings are read at import time; configure them before importing the app.
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/tenantcms-test-directory.db")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("ENCRYPTION_KEY", base64.urlsafe_b64encode(b"k" * 32).decode())
os.environ.setdefault("PLATFORM_API_KEY", "test-platform-key")

import pytest  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from tenantcms.core.cache import usage_cache  # noqa: E402
from tenantcms.core.config import get_settings  # noqa: E402
from tenantcms.core.database import init_db  # noqa: E402
from tenantcms.core.exceptions import ExternalServiceError  # noqa: E402
from tenantcms.core.platform import Platform  # noqa: E402
from tenantcms.main import app  # noqa: E402
from tenantcms.services.certificates import ChallengeMethod  # noqa: E402
from tenantcms.services.database_server import DatabaseServer  # noqa: E402
from tenantcms.services.directory import TenantDirectory  # noqa: E402
from tenantcms.services.dns import DNSRecord  # noqa: E402
from tenantcms.services.orchestrator import ProvisioningConfig, TenantOrchestrator  # noqa: E402
from tenantcms.services.registry import ConnectionRegistry  # noqa: E402
from tenantcms.services.resolver import TenantResolver  # noqa: E402

DB_PREFIX = "news_cms_tenant_"
BASE_DOMAIN = "newscms.io"
SERVER_IP = "203.0.113.10"
PLATFORM_HEADERS = {"Authorization": "Bearer test-platform-key"}


# ── Fakes for external collaborators ─────────────────────────

class _Failing:
    """Mixin: raise ExternalServiceError from any method named in ``fail_on``."""

    def __init__(self) -> None:
        self.fail_on: set[str] = set()
        self.calls: list[tuple[str, str | None]] = []

    def _hit(self, method: str, arg: str | None = None) -> None:
        self.calls.append((method, arg))
        if method in self.fail_on:
            raise ExternalServiceError(f"injected {method} failure")


class FakeDNS(_Failing):
    def __init__(self) -> None:
        super().__init__()
        self.records: dict[str, DNSRecord] = {}
        self._next_id = 0

    async def list_records(self, name: str, record_type: str | None = None) -> list[DNSRecord]:
        self._hit("list_records", name)
        return [
            r for r in self.records.values()
            if r.name == name and (record_type is None or r.type == record_type)
        ]

    async def create_record(
        self, record_type: str, name: str, target: str, *, proxied: bool = True
    ) -> DNSRecord:
        self._hit("create_record", name)
        self._next_id += 1
        record = DNSRecord(id=f"rec{self._next_id}", type=record_type, name=name, content=target, proxied=proxied)
        self.records[record.id] = record
        return record

    async def delete_record(self, record_id: str) -> None:
        self._hit("delete_record", record_id)
        self.records.pop(record_id, None)

    def names(self) -> set[str]:
        return {r.name for r in self.records.values()}


class FakeCertificates(_Failing):
    def __init__(self) -> None:
        super().__init__()
        self.issued: dict[str, ChallengeMethod] = {}

    async def has_valid_certificate(self, domain: str) -> bool:
        self._hit("has_valid_certificate", domain)
        return domain in self.issued

    async def issue_certificate(self, domain: str, challenge: ChallengeMethod) -> None:
        self._hit("issue_certificate", domain)
        self.issued[domain] = challenge

    async def delete_certificate(self, domain: str) -> None:
        self._hit("delete_certificate", domain)
        self.issued.pop(domain, None)


class FakeProxy(_Failing):
    def __init__(self) -> None:
        super().__init__()
        self.configured: set[str] = set()
        self.reloads = 0

    def is_configured(self, domain: str) -> bool:
        return domain in self.configured

    async def install(self, domain: str) -> None:
        self._hit("install", domain)
        self.configured.add(domain)

    async def validate(self) -> None:
        self._hit("validate")

    async def reload(self) -> None:
        self._hit("reload")
        self.reloads += 1

    async def remove(self, domain: str) -> bool:
        self._hit("remove", domain)
        if domain in self.configured:
            self.configured.discard(domain)
            return True
        return False


class FakeProbe(_Failing):
    async def verify(self, domain: str) -> None:
        self._hit("verify", domain)

    async def check(self, domain: str) -> bool:
        return "verify" not in self.fail_on


# ── Database fixtures ────────────────────────────────────────

@pytest.fixture
async def directory_engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'directory.db'}", echo=False)
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(directory_engine):
    """Session factory bound to the test directory database."""
    return sessionmaker(directory_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def directory(session_factory) -> TenantDirectory:
    return TenantDirectory(session_factory, database_prefix=DB_PREFIX)


@pytest.fixture
async def server(tmp_path) -> AsyncGenerator[DatabaseServer, None]:
    srv = DatabaseServer(f"sqlite+aiosqlite:///{tmp_path / 'tenants'}")
    yield srv
    await srv.dispose()


@pytest.fixture
async def registry(server) -> AsyncGenerator[ConnectionRegistry, None]:
    reg = ConnectionRegistry(server, database_prefix=DB_PREFIX, pool_size=2, connect_timeout=5.0)
    yield reg
    await reg.close_all()


@pytest.fixture
async def resolver(directory) -> AsyncGenerator[TenantResolver, None]:
    res = TenantResolver(directory, base_domain=BASE_DOMAIN)
    yield res
    await res.drain()


# ── Orchestrator fixtures ────────────────────────────────────

@pytest.fixture
def fake_dns() -> FakeDNS:
    return FakeDNS()


@pytest.fixture
def fake_certificates() -> FakeCertificates:
    return FakeCertificates()


@pytest.fixture
def fake_proxy() -> FakeProxy:
    return FakeProxy()


@pytest.fixture
def fake_probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def provisioning_config() -> ProvisioningConfig:
    return ProvisioningConfig(
        server_ip=SERVER_IP,
        dns_enabled=True,
        wildcard_base_domain=BASE_DOMAIN,
        tls_enabled=True,
        challenge=ChallengeMethod.DNS,
        proxy_enabled=True,
        verification_enabled=True,
        dns_timeout=5.0,
        certificate_timeout=5.0,
        proxy_timeout=5.0,
        database_timeout=30.0,
        verification_timeout=5.0,
    )


@pytest.fixture
def orchestrator(
    directory, server, registry, provisioning_config, fake_dns, fake_certificates, fake_proxy, fake_probe,
) -> TenantOrchestrator:
    return TenantOrchestrator(
        directory,
        server,
        registry,
        config=provisioning_config,
        dns=fake_dns,
        certificates=fake_certificates,
        proxy=fake_proxy,
        probe=fake_probe,
    )


@pytest.fixture
def platform(directory, server, registry, resolver, orchestrator) -> Platform:
    return Platform(
        settings=get_settings(),
        directory=directory,
        server=server,
        registry=registry,
        resolver=resolver,
        orchestrator=orchestrator,
    )


# ── HTTP client ──────────────────────────────────────────────

@pytest.fixture
async def client(platform) -> AsyncGenerator[AsyncClient, None]:
    """HTTPX async test client wired to the test platform.

    ASGITransport does not run the lifespan, so the platform is attached here.
    Pass ``headers={"Host": ...}`` to address a tenant.
    """
    app.state.platform = platform
    usage_cache.clear()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    usage_cache.clear()
    del app.state.platform


def tenant_request(domain: str = "acme.example.com", **overrides) -> dict:
    body = {
        "name": "Acme News",
        "domain": domain,
        "contact_name": "Jane Doe",
        "contact_email": f"jane@{domain}",
        "plan": "trial",
    }
    body.update(overrides)
    return body
