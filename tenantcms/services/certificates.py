"""Run certbot (ACME) to issue, check and delete TLS certificates."""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta, timezone
from enum import StrEnum
from typing import Protocol

from cryptography import x509

from tenantcms.services.process import run_command

logger = logging.getLogger(__name__)


class ChallengeMethod(StrEnum):
    DNS = "dns"
    HTTP = "http"


class CertificateAuthority(Protocol):
    async def has_valid_certificate(self, domain: str) -> bool: ...

    async def issue_certificate(self, domain: str, challenge: ChallengeMethod) -> None: ...

    async def delete_certificate(self, domain: str) -> None: ...


class CertbotAuthority:
    def __init__(
        self,
        *,
        binary: str = "certbot",
        live_path: str = "/etc/letsencrypt/live",
        webroot: str = "/var/www/html",
        cloudflare_credentials: str = "",
        email: str = "",
        min_valid_days: int = 14,
        timeout: float = 180.0,
    ) -> None:
        self._binary = binary
        self._live_path = live_path
        self._webroot = webroot
        self._cloudflare_credentials = cloudflare_credentials
        self._email = email
        self._min_valid = timedelta(days=min_valid_days)
        self._timeout = timeout

    def certificate_path(self, domain: str) -> str:
        return os.path.join(self._live_path, domain, "fullchain.pem")

    async def has_valid_certificate(self, domain: str) -> bool:
        path = self.certificate_path(domain)
        if not os.path.exists(path):
            return False
        try:
            with open(path, "rb") as fh:
                cert = x509.load_pem_x509_certificate(fh.read())
        except (OSError, ValueError):
            logger.warning("Unreadable certificate at %s", path)
            return False
        return cert.not_valid_after_utc > datetime.now(timezone.utc) + self._min_valid

    async def issue_certificate(self, domain: str, challenge: ChallengeMethod) -> None:
        argv = [self._binary, "certonly"]
        if challenge == ChallengeMethod.DNS:
            argv += ["--dns-cloudflare", "--dns-cloudflare-credentials", self._cloudflare_credentials]
        else:
            argv += ["--webroot", "-w", self._webroot]
        argv += ["-d", domain, "--non-interactive", "--agree-tos"]
        if self._email:
            argv += ["--email", self._email]
        else:
            argv += ["--register-unsafely-without-email"]
        await run_command(argv, timeout=self._timeout)
        logger.info("SSL certificate generated for %s (%s challenge)", domain, challenge)

    async def delete_certificate(self, domain: str) -> None:
        await run_command(
            [self._binary, "delete", "--cert-name", domain, "--non-interactive"],
            timeout=self._timeout,
        )
        logger.info("SSL certificate removed for %s", domain)
