"""Tests for the external collaborators and small platform utilities."""

import json
import os
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from tenantcms.core.cache import TTLCache
from tenantcms.core.config import Settings
from tenantcms.core.exceptions import CommandFailed, ExternalServiceError
from tenantcms.core.locks import KeyedLocks
from tenantcms.core.security import (
    decrypt_value,
    encrypt_value,
    generate_temporary_password,
    verify_platform_key,
)
from tenantcms.services.certificates import CertbotAuthority, ChallengeMethod
from tenantcms.services.dns import CloudflareDNS, ensure_a_record, remove_domain_records
from tenantcms.services.orchestrator import ProvisioningConfig
from tenantcms.services.probe import HealthProbe
from tenantcms.services.process import run_command
from tenantcms.services.proxy import NginxProxy, render_nginx_config


# ── Commands ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_run_command_output():
    assert (await run_command("echo hello", timeout=5)).strip() == "hello"


@pytest.mark.asyncio
async def test_run_command_failures():
    with pytest.raises(CommandFailed) as excinfo:
        await run_command(["false"], timeout=5)
    assert excinfo.value.returncode == 1

    with pytest.raises(CommandFailed) as excinfo:
        await run_command(["definitely-not-a-binary-4711"], timeout=5)
    assert excinfo.value.returncode == 127

    with pytest.raises(CommandFailed) as excinfo:
        await run_command(["sleep", "5"], timeout=0.1)
    assert excinfo.value.returncode is None
    assert "timed out" in excinfo.value.message


# ── nginx ────────────────────────────────────────────────────

def test_render_nginx_config():
    config = render_nginx_config(
        "acme.example.com",
        upstream="http://127.0.0.1:8000",
        cert_live_path="/etc/letsencrypt/live",
        uploads_path="/srv/uploads/",
    )
    assert "server_name acme.example.com;" in config
    assert "return 301 https://$server_name$request_uri;" in config
    assert "ssl_certificate /etc/letsencrypt/live/acme.example.com/fullchain.pem;" in config
    assert "zone=acme_example_com_api:10m" in config
    assert "limit_req zone=acme_example_com_auth" in config
    assert "alias /srv/uploads/;" in config
    assert config.count("proxy_pass http://127.0.0.1:8000;") == 4


def _nginx(tmp_path, *, test_command="true", reload_command="true") -> NginxProxy:
    available = tmp_path / "sites-available"
    enabled = tmp_path / "sites-enabled"
    available.mkdir()
    enabled.mkdir()
    return NginxProxy(
        sites_available=str(available),
        sites_enabled=str(enabled),
        upstream="http://127.0.0.1:8000",
        cert_live_path=str(tmp_path / "live"),
        uploads_path="/srv/uploads/",
        test_command=test_command,
        reload_command=reload_command,
        timeout=5,
    )


@pytest.mark.asyncio
async def test_nginx_install_and_remove(tmp_path):
    proxy = _nginx(tmp_path)

    await proxy.install("acme.example.com")
    await proxy.validate()
    await proxy.reload()
    assert proxy.is_configured("acme.example.com")
    assert os.path.islink(proxy.enabled_path("acme.example.com"))

    # Reinstalling rewrites the fragment without failing on the existing link.
    await proxy.install("acme.example.com")

    assert await proxy.remove("acme.example.com") is True
    assert not proxy.is_configured("acme.example.com")
    assert not os.path.exists(proxy.config_path("acme.example.com"))
    assert await proxy.remove("acme.example.com") is False


@pytest.mark.asyncio
async def test_nginx_validation_failure(tmp_path):
    proxy = _nginx(tmp_path, test_command="false")
    await proxy.install("acme.example.com")

    with pytest.raises(CommandFailed):
        await proxy.validate()


# ── Cloudflare ───────────────────────────────────────────────

class CloudflareStub:
    def __init__(self) -> None:
        self.records: dict[str, dict] = {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        assert request.headers["Authorization"] == "Bearer cf-token"
        assert request.url.path.startswith("/client/v4/zones/zone-1/dns_records")

        if request.method == "GET":
            name = request.url.params["name"]
            result = [r for r in self.records.values() if r["name"] == name]
        elif request.method == "POST":
            payload = json.loads(request.content)
            rid = f"id{len(self.records) + 1}"
            result = self.records[rid] = {"id": rid, **payload}
        else:
            result = self.records.pop(request.url.path.rsplit("/", 1)[1])
        return httpx.Response(200, json={"success": True, "errors": [], "result": result})


def _cloudflare(handler) -> CloudflareDNS:
    return CloudflareDNS(
        "https://api.cloudflare.com/client/v4",
        "cf-token",
        "zone-1",
        ttl=120,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_cloudflare_ensure_and_remove():
    stub = CloudflareStub()
    dns = _cloudflare(stub)

    record = await ensure_a_record(dns, "acme.example.com", "203.0.113.10", proxied=True)
    assert record is not None
    assert (record.type, record.name, record.content, record.proxied) == ("A", "acme.example.com", "203.0.113.10", True)
    assert stub.records[record.id]["ttl"] == 120

    # Second call finds the record and creates nothing.
    assert await ensure_a_record(dns, "acme.example.com", "203.0.113.10") is None
    assert len(stub.records) == 1

    assert await remove_domain_records(dns, "acme.example.com") == 1
    assert stub.records == {}


@pytest.mark.asyncio
async def test_cloudflare_api_error():
    def handler(request):
        return httpx.Response(403, json={"success": False, "errors": [{"code": 10000, "message": "Authentication error"}]})

    with pytest.raises(ExternalServiceError) as excinfo:
        await _cloudflare(handler).list_records("acme.example.com")
    assert excinfo.value.details["errors"][0]["code"] == 10000


@pytest.mark.asyncio
async def test_cloudflare_network_error():
    def handler(request):
        raise httpx.ConnectError("unreachable")

    with pytest.raises(ExternalServiceError):
        await _cloudflare(handler).list_records("acme.example.com")


# ── Health probe ─────────────────────────────────────────────

@pytest.mark.asyncio
async def test_probe_verify():
    seen = []

    def healthy(request):
        seen.append(str(request.url))
        return httpx.Response(200, json={"status": "ok"})

    probe = HealthProbe(grace_seconds=0, transport=httpx.MockTransport(healthy))
    await probe.verify("acme.example.com")
    assert seen == ["https://acme.example.com/health"]
    assert await probe.check("acme.example.com") is True


@pytest.mark.asyncio
async def test_probe_unhealthy():
    probe = HealthProbe(grace_seconds=0, transport=httpx.MockTransport(lambda r: httpx.Response(502)))

    with pytest.raises(ExternalServiceError):
        await probe.verify("acme.example.com")
    assert await probe.check("acme.example.com") is False


# ── certbot ──────────────────────────────────────────────────

def _write_certificate(live_path, domain, not_after):
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(timezone.utc) - timedelta(days=1))
        .not_valid_after(not_after)
        .sign(key, hashes.SHA256())
    )
    directory = live_path / domain
    directory.mkdir(parents=True)
    (directory / "fullchain.pem").write_bytes(cert.public_bytes(serialization.Encoding.PEM))


@pytest.mark.asyncio
async def test_certificate_validity(tmp_path):
    authority = CertbotAuthority(live_path=str(tmp_path), min_valid_days=14)
    now = datetime.now(timezone.utc)
    _write_certificate(tmp_path, "fresh.example.com", now + timedelta(days=80))
    _write_certificate(tmp_path, "expiring.example.com", now + timedelta(days=3))

    assert await authority.has_valid_certificate("fresh.example.com") is True
    assert await authority.has_valid_certificate("expiring.example.com") is False
    assert await authority.has_valid_certificate("missing.example.com") is False


@pytest.mark.asyncio
async def test_certbot_arguments(tmp_path):
    authority = CertbotAuthority(
        live_path=str(tmp_path),
        webroot="/var/www/html",
        cloudflare_credentials="/secrets/cloudflare.ini",
        email="ops@newscms.io",
    )
    mock_run = AsyncMock(return_value="")

    with patch("tenantcms.services.certificates.run_command", mock_run):
        await authority.issue_certificate("acme.example.com", ChallengeMethod.DNS)
        await authority.issue_certificate("acme.example.com", ChallengeMethod.HTTP)
        await authority.delete_certificate("acme.example.com")

    dns_argv = mock_run.call_args_list[0].args[0]
    assert dns_argv[:2] == ["certbot", "certonly"]
    assert "--dns-cloudflare-credentials" in dns_argv
    assert dns_argv[dns_argv.index("-d") + 1] == "acme.example.com"
    assert dns_argv[dns_argv.index("--email") + 1] == "ops@newscms.io"

    http_argv = mock_run.call_args_list[1].args[0]
    assert http_argv[http_argv.index("-w") + 1] == "/var/www/html"

    assert mock_run.call_args_list[2].args[0][:4] == ["certbot", "delete", "--cert-name", "acme.example.com"]


# ── Database server ──────────────────────────────────────────

@pytest.mark.asyncio
async def test_sqlite_database_lifecycle(server):
    assert await server.database_exists("news_cms_tenant_abc") is False
    assert await server.create_database("news_cms_tenant_abc") is True
    assert await server.create_database("news_cms_tenant_abc") is False
    assert await server.database_exists("news_cms_tenant_abc") is True
    assert server.url_for("news_cms_tenant_abc").database.endswith("news_cms_tenant_abc.db")

    await server.drop_database("news_cms_tenant_abc")
    assert await server.database_exists("news_cms_tenant_abc") is False
    # Dropping twice is harmless.
    await server.drop_database("news_cms_tenant_abc")


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "x; DROP DATABASE main", 'quo"te', "a" * 64])
async def test_illegal_database_names(server, name):
    with pytest.raises(ValueError):
        await server.create_database(name)


# ── Locks, cache, config, security ───────────────────────────

@pytest.mark.asyncio
async def test_keyed_locks():
    locks = KeyedLocks()
    async with locks.hold("domain:a.example.com"):
        assert locks.locked("domain:a.example.com")
        assert not locks.locked("domain:b.example.com")
        async with locks.hold("domain:b.example.com"):
            assert len(locks) == 2
    assert len(locks) == 0
    assert not locks.locked("domain:a.example.com")


def test_ttl_cache():
    cache = TTLCache(ttl=60)
    cache.put(("t1", "usage"), {"users": 1})
    cache.put(("t2", "usage"), {"users": 2})
    assert cache.get(("t1", "usage")) == {"users": 1}

    cache.invalidate_prefix("t1")
    assert cache.get(("t1", "usage")) is None
    assert cache.get(("t2", "usage")) == {"users": 2}

    expired = TTLCache(ttl=-1)
    expired.put("k", 1)
    assert expired.get("k") is None


def test_provisioning_config_from_settings():
    config = ProvisioningConfig.from_settings(Settings(
        cloudflare_api_token="cf-token",
        cloudflare_zone_id="zone-1",
        main_domain="NewsCMS.io.",
        verification_grace_seconds=10,
        verification_timeout=30,
    ))
    assert config.dns_enabled is True
    assert config.challenge == ChallengeMethod.DNS
    assert config.wildcard_base_domain == "newscms.io"
    assert config.verification_timeout == 45
    assert config.covered_by_wildcard("acme.newscms.io")
    assert not config.covered_by_wildcard("newscms.io")
    assert not config.covered_by_wildcard("acme.example.com")

    without_dns = ProvisioningConfig.from_settings(Settings(cloudflare_api_token="", cloudflare_zone_id=""))
    assert without_dns.dns_enabled is False
    assert without_dns.challenge == ChallengeMethod.HTTP


def test_temporary_password_classes():
    for _ in range(20):
        password = generate_temporary_password()
        assert len(password) == 16
        assert any(c.islower() for c in password)
        assert any(c.isupper() for c in password)
        assert any(c.isdigit() for c in password)
        assert any(c in "!@#$%^&*" for c in password)


def test_platform_key_and_encryption():
    assert verify_platform_key("test-platform-key") is True
    assert verify_platform_key("wrong") is False
    token = encrypt_value("s3cret")
    assert token != "s3cret"
    assert decrypt_value(token) == "s3cret"
