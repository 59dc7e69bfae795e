"""End-to-end health check against a tenant domain."""

import asyncio
import logging

import httpx

from tenantcms.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


class HealthProbe:
    def __init__(
        self,
        *,
        grace_seconds: float = 10.0,
        timeout: float = 30.0,
        scheme: str = "https",
        path: str = "/health",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._grace = grace_seconds
        self._timeout = timeout
        self._scheme = scheme
        self._path = path
        self._transport = transport

    async def verify(self, domain: str) -> None:
        """Wait for DNS propagation, then require a 200 from the health endpoint."""
        if self._grace > 0:
            await asyncio.sleep(self._grace)
        url = f"{self._scheme}://{domain}{self._path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(url)
        except httpx.HTTPError as exc:
            raise ExternalServiceError(f"Health check request to {url} failed: {exc}") from exc
        if resp.status_code != 200:
            raise ExternalServiceError(f"Health check failed with status: {resp.status_code}")
        logger.info("Tenant verification successful for %s", domain)

    async def check(self, domain: str) -> bool:
        url = f"{self._scheme}://{domain}{self._path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.get(url)
        except httpx.HTTPError:
            return False
        return resp.status_code == 200
