"""DNS control — Cloudflare API client and record helpers."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from tenantcms.core.exceptions import ExternalServiceError

logger = logging.getLogger(__name__)


@dataclass
class DNSRecord:
    id: str
    type: str
    name: str
    content: str
    proxied: bool = False


class DNSProvider(Protocol):
    async def list_records(self, name: str, record_type: str | None = None) -> list[DNSRecord]: ...

    async def create_record(
        self, record_type: str, name: str, target: str, *, proxied: bool = True
    ) -> DNSRecord: ...

    async def delete_record(self, record_id: str) -> None: ...


class CloudflareDNS:
    """Minimal Cloudflare v4 DNS records client."""

    def __init__(
        self,
        api_url: str,
        api_token: str,
        zone_id: str,
        *,
        ttl: int = 300,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._api_token = api_token
        self._zone_id = zone_id
        self._ttl = ttl
        self._timeout = timeout
        self._transport = transport

    async def list_records(self, name: str, record_type: str | None = None) -> list[DNSRecord]:
        params = {"name": name}
        if record_type:
            params["type"] = record_type
        result = await self._request("GET", "/dns_records", params=params)
        return [_to_record(r) for r in result]

    async def create_record(
        self, record_type: str, name: str, target: str, *, proxied: bool = True
    ) -> DNSRecord:
        result = await self._request("POST", "/dns_records", json={
            "type": record_type,
            "name": name,
            "content": target,
            "ttl": self._ttl,
            "proxied": proxied,
        })
        logger.info("Cloudflare DNS record created for %s", name)
        return _to_record(result)

    async def delete_record(self, record_id: str) -> None:
        await self._request("DELETE", f"/dns_records/{record_id}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {
            "Authorization": f"Bearer {self._api_token}",
            "Content-Type": "application/json",
        }
        url = f"{self._api_url}/zones/{self._zone_id}{path}"
        try:
            async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
                resp = await client.request(method, url, headers=headers, **kwargs)
            data = resp.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise ExternalServiceError(f"Cloudflare request failed: {exc}") from exc

        if resp.status_code >= 400 or not data.get("success", False):
            raise ExternalServiceError(
                f"Cloudflare API error ({resp.status_code})",
                details={"errors": data.get("errors", [])},
            )
        return data.get("result")


def _to_record(raw: dict) -> DNSRecord:
    return DNSRecord(
        id=raw["id"],
        type=raw.get("type", ""),
        name=raw.get("name", ""),
        content=raw.get("content", ""),
        proxied=bool(raw.get("proxied", False)),
    )


async def ensure_a_record(
    provider: DNSProvider, domain: str, ip_address: str, *, proxied: bool = True
) -> DNSRecord | None:
    """Create an A record unless one exists. Returns the new record, or None."""
    existing = await provider.list_records(domain)
    if existing:
        logger.info("DNS record already exists for %s", domain)
        return None
    return await provider.create_record("A", domain, ip_address, proxied=proxied)


async def remove_domain_records(provider: DNSProvider, domain: str) -> int:
    records = await provider.list_records(domain)
    for record in records:
        await provider.delete_record(record.id)
    if records:
        logger.info("Removed %d DNS records for %s", len(records), domain)
    return len(records)
