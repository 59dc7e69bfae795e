"""Reverse-proxy control — per-domain nginx fragments, validation and reload."""

from __future__ import annotations

import logging
import os
from typing import Protocol

from tenantcms.models.base import utcnow
from tenantcms.services.process import run_command

logger = logging.getLogger(__name__)


class ReverseProxy(Protocol):
    def is_configured(self, domain: str) -> bool: ...

    async def install(self, domain: str) -> None: ...

    async def validate(self) -> None: ...

    async def reload(self) -> None: ...

    async def remove(self, domain: str) -> bool: ...


NGINX_TEMPLATE = """\
# Auto-generated configuration for {domain}
# Generated at: {generated_at}

limit_req_zone $binary_remote_addr zone={zone}_api:10m rate=100r/m;
limit_req_zone $binary_remote_addr zone={zone}_auth:10m rate=5r/m;

server {{
    listen 80;
    server_name {domain};
    return 301 https://$server_name$request_uri;
}}

server {{
    listen 443 ssl http2;
    server_name {domain};

    ssl_certificate {cert_dir}/fullchain.pem;
    ssl_certificate_key {cert_dir}/privkey.pem;
    ssl_session_timeout 1d;
    ssl_session_cache shared:SSL:50m;
    ssl_session_tickets off;
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers off;

    add_header Strict-Transport-Security "max-age=63072000" always;
    add_header X-Frame-Options DENY always;
    add_header X-Content-Type-Options nosniff always;
    add_header Referrer-Policy "strict-origin-when-cross-origin" always;

    client_max_body_size 10M;

    gzip on;
    gzip_vary on;
    gzip_min_length 1024;
    gzip_types text/plain text/css application/javascript application/json;

    location /uploads/ {{
        alias {uploads_path};
        expires 7d;
        add_header Cache-Control "public, immutable";
        access_log off;
    }}

    location /api/auth/ {{
        limit_req zone={zone}_auth burst=10 nodelay;
{proxy_block}
    }}

    location /api/ {{
        limit_req zone={zone}_api burst=50 nodelay;
{proxy_block}
    }}

    location / {{
{proxy_block}
    }}

    location = /health {{
        proxy_pass {upstream};
        access_log off;
    }}

    access_log /var/log/nginx/{domain}-access.log;
    error_log /var/log/nginx/{domain}-error.log;
}}
"""

PROXY_BLOCK = """\
        proxy_pass {upstream};
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;"""


def render_nginx_config(
    domain: str, *, upstream: str, cert_live_path: str, uploads_path: str
) -> str:
    return NGINX_TEMPLATE.format(
        domain=domain,
        generated_at=utcnow().isoformat(),
        zone=domain.replace(".", "_").replace("-", "_"),
        cert_dir=os.path.join(cert_live_path, domain),
        uploads_path=uploads_path,
        upstream=upstream,
        proxy_block=PROXY_BLOCK.format(upstream=upstream),
    )


class NginxProxy:
    def __init__(
        self,
        *,
        sites_available: str,
        sites_enabled: str,
        upstream: str,
        cert_live_path: str,
        uploads_path: str,
        test_command: str = "nginx -t",
        reload_command: str = "systemctl reload nginx",
        timeout: float = 30.0,
    ) -> None:
        self._available = sites_available
        self._enabled = sites_enabled
        self._upstream = upstream
        self._cert_live_path = cert_live_path
        self._uploads_path = uploads_path
        self._test_command = test_command
        self._reload_command = reload_command
        self._timeout = timeout

    def config_path(self, domain: str) -> str:
        return os.path.join(self._available, f"{domain}.conf")

    def enabled_path(self, domain: str) -> str:
        return os.path.join(self._enabled, f"{domain}.conf")

    def is_configured(self, domain: str) -> bool:
        return os.path.lexists(self.enabled_path(domain))

    async def install(self, domain: str) -> None:
        """Write the fragment and enable it. Does not reload."""
        config = render_nginx_config(
            domain,
            upstream=self._upstream,
            cert_live_path=self._cert_live_path,
            uploads_path=self._uploads_path,
        )
        with open(self.config_path(domain), "w") as fh:
            fh.write(config)
        try:
            os.symlink(self.config_path(domain), self.enabled_path(domain))
        except FileExistsError:
            pass
        logger.info("NGINX configuration written for %s", domain)

    async def validate(self) -> None:
        await run_command(self._test_command, timeout=self._timeout)

    async def reload(self) -> None:
        await run_command(self._reload_command, timeout=self._timeout)
        logger.info("NGINX reloaded")

    async def remove(self, domain: str) -> bool:
        removed = False
        for path in (self.enabled_path(domain), self.config_path(domain)):
            if os.path.lexists(path):
                os.remove(path)
                removed = True
        if removed:
            logger.info("NGINX configuration removed for %s", domain)
        return removed
