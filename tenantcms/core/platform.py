"""Process-wide service container, built once in the application lifespan."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.orm import sessionmaker

from tenantcms.core.config import Settings
from tenantcms.services.certificates import CertbotAuthority
from tenantcms.services.database_server import DatabaseServer
from tenantcms.services.directory import TenantDirectory
from tenantcms.services.dns import CloudflareDNS
from tenantcms.services.orchestrator import ProvisioningConfig, TenantOrchestrator
from tenantcms.services.probe import HealthProbe
from tenantcms.services.proxy import NginxProxy
from tenantcms.services.registry import ConnectionRegistry
from tenantcms.services.resolver import TenantResolver

logger = logging.getLogger(__name__)


@dataclass
class Platform:
    settings: Settings
    directory: TenantDirectory
    server: DatabaseServer
    registry: ConnectionRegistry
    resolver: TenantResolver
    orchestrator: TenantOrchestrator

    async def close(self) -> None:
        await self.resolver.drain()
        await self.registry.close_all()
        await self.server.dispose()


def build_platform(settings: Settings, session_factory: sessionmaker) -> Platform:
    """Wire the directory, registry, resolver and orchestrator from settings."""
    directory = TenantDirectory(session_factory, database_prefix=settings.tenant_db_prefix)
    server = DatabaseServer(settings.tenant_server_url)
    registry = ConnectionRegistry.from_settings(settings, server)
    config = ProvisioningConfig.from_settings(settings)

    dns = None
    if config.dns_enabled:
        dns = CloudflareDNS(
            settings.cloudflare_api_url,
            settings.cloudflare_api_token,
            settings.cloudflare_zone_id,
            ttl=settings.dns_record_ttl,
            timeout=settings.dns_timeout,
        )
    certificates = CertbotAuthority(
        binary=settings.certbot_binary,
        live_path=settings.certbot_live_path,
        webroot=settings.certbot_webroot,
        cloudflare_credentials=settings.certbot_cloudflare_credentials,
        email=settings.acme_email,
        min_valid_days=settings.certificate_min_valid_days,
        timeout=settings.certificate_timeout,
    )
    proxy = NginxProxy(
        sites_available=settings.nginx_sites_available,
        sites_enabled=settings.nginx_sites_enabled,
        upstream=settings.upstream_url,
        cert_live_path=settings.certbot_live_path,
        uploads_path=settings.uploads_path,
        test_command=settings.nginx_test_command,
        reload_command=settings.nginx_reload_command,
        timeout=settings.proxy_timeout,
    )
    probe = HealthProbe(
        grace_seconds=settings.verification_grace_seconds,
        timeout=settings.verification_timeout,
    )

    logger.info(
        "Platform ready (dns=%s tls=%s proxy=%s verify=%s)",
        config.dns_enabled, config.tls_enabled, config.proxy_enabled, config.verification_enabled,
    )
    return Platform(
        settings=settings,
        directory=directory,
        server=server,
        registry=registry,
        resolver=TenantResolver(directory, base_domain=settings.main_domain),
        orchestrator=TenantOrchestrator(
            directory,
            server,
            registry,
            config=config,
            dns=dns,
            certificates=certificates,
            proxy=proxy,
            probe=probe,
        ),
    )
