"""Tenant lifecycle orchestrator — provisioning, deprovisioning and domain moves.

Provisioning flow:
  1. Insert the tenant record (status = provisioning)
  2. Create the tenant database
  3. Initialize its schema (through the connection registry)
  4. Ensure a DNS record (skipped under the wildcard base domain)
  5. Issue a TLS certificate (skipped while a valid one exists)
  6. Install, validate and reload the reverse-proxy fragment
  7. Probe the new domain end to end
  8. Create the default admin account with a temporary password
  9. Activate the tenant

Any failure rolls back the applied steps in reverse and surfaces as
``ProvisioningStepFailed``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import Any, TypeVar

from tenantcms.core.config import Settings
from tenantcms.core.exceptions import (
    DomainExists,
    ExternalServiceError,
    InvalidStatusTransition,
    ProvisioningStepFailed,
    TenantBusy,
    TenantError,
)
from tenantcms.core.locks import KeyedLocks
from tenantcms.core.security import generate_temporary_password
from tenantcms.models.base import new_uuid
from tenantcms.models.tenant import BulkAction, Tenant, TenantCreate, TenantStatus
from tenantcms.models.user import UserRole
from tenantcms.services.accounts import create_user, split_name
from tenantcms.services.certificates import CertificateAuthority, ChallengeMethod
from tenantcms.services.database_server import DatabaseServer
from tenantcms.services.directory import TenantDirectory
from tenantcms.services.dns import DNSProvider, DNSRecord, ensure_a_record, remove_domain_records
from tenantcms.services.probe import HealthProbe
from tenantcms.services.proxy import ReverseProxy
from tenantcms.services.registry import ConnectionRegistry
from tenantcms.services.steps import Step, StepOutcome, run_compensations, run_steps

logger = logging.getLogger(__name__)
audit = logging.getLogger("tenantcms.audit")

T = TypeVar("T")

_BULK_STATUS = {
    BulkAction.SUSPEND: TenantStatus.SUSPENDED,
    BulkAction.ACTIVATE: TenantStatus.ACTIVE,
}


@dataclass(frozen=True)
class ProvisioningConfig:
    """Which optional steps apply, and how long each may take."""

    server_ip: str = "127.0.0.1"
    dns_enabled: bool = False
    dns_proxied: bool = True
    wildcard_base_domain: str = ""
    tls_enabled: bool = True
    challenge: ChallengeMethod = ChallengeMethod.HTTP
    proxy_enabled: bool = True
    verification_enabled: bool = True
    dns_timeout: float = 15.0
    certificate_timeout: float = 180.0
    proxy_timeout: float = 30.0
    database_timeout: float = 60.0
    verification_timeout: float = 45.0

    @classmethod
    def from_settings(cls, settings: Settings) -> ProvisioningConfig:
        dns_enabled = bool(settings.cloudflare_api_token and settings.cloudflare_zone_id)
        return cls(
            server_ip=settings.server_ip,
            dns_enabled=dns_enabled,
            dns_proxied=settings.dns_proxied,
            wildcard_base_domain=settings.main_domain.lower().strip("."),
            tls_enabled=settings.tls_enabled,
            challenge=ChallengeMethod.DNS if dns_enabled else ChallengeMethod.HTTP,
            proxy_enabled=settings.proxy_enabled,
            verification_enabled=settings.verification_enabled,
            dns_timeout=settings.dns_timeout,
            certificate_timeout=settings.certificate_timeout,
            proxy_timeout=settings.proxy_timeout,
            database_timeout=settings.database_timeout,
            # The probe sleeps for the grace period before its request.
            verification_timeout=settings.verification_grace_seconds + settings.verification_timeout + 5,
        )

    def covered_by_wildcard(self, domain: str) -> bool:
        base = self.wildcard_base_domain
        return bool(base) and domain.lower().endswith(f".{base}")


# ── Results ──────────────────────────────────────────────────

@dataclass
class AdminCredentials:
    email: str
    temporary_password: str = field(repr=False)


@dataclass
class ProvisioningResult:
    tenant: Tenant
    admin: AdminCredentials
    applied_steps: list[str]
    skipped_steps: list[str]


@dataclass
class DeprovisionResult:
    tenant_id: uuid.UUID
    domain: str
    cleanup_failed_steps: list[str]

    @property
    def cleanup_complete(self) -> bool:
        return not self.cleanup_failed_steps


@dataclass
class MigrationResult:
    tenant: Tenant
    old_domain: str
    new_domain: str
    cleanup_failed_steps: list[str]


@dataclass
class TenantStatusReport:
    tenant_id: uuid.UUID
    domain: str
    directory_status: TenantStatus
    database_reachable: bool
    dns_record: bool | None = None
    proxy_configured: bool | None = None
    certificate_valid: bool | None = None
    domain_reachable: bool | None = None


@dataclass
class BulkItemResult:
    tenant_id: uuid.UUID
    success: bool
    status: TenantStatus | None = None
    cleanup_failed_steps: list[str] = field(default_factory=list)
    error: dict[str, Any] | None = None


# ── Per-run state shared between steps ───────────────────────

@dataclass
class _Run:
    tenant_id: uuid.UUID
    domain: str
    tenant: Tenant | None = None
    dns_record: DNSRecord | None = None
    admin: AdminCredentials | None = None


class TenantOrchestrator:
    def __init__(
        self,
        directory: TenantDirectory,
        server: DatabaseServer,
        registry: ConnectionRegistry,
        *,
        config: ProvisioningConfig,
        dns: DNSProvider | None = None,
        certificates: CertificateAuthority | None = None,
        proxy: ReverseProxy | None = None,
        probe: HealthProbe | None = None,
    ) -> None:
        self.directory = directory
        self.server = server
        self.registry = registry
        self.config = config
        self._dns = dns
        self._certificates = certificates
        self._proxy = proxy
        self._probe = probe
        self._locks = KeyedLocks()

    # ── Provisioning ─────────────────────────────────────────

    async def provision(
        self, request: TenantCreate, *, tenant_id: uuid.UUID | None = None
    ) -> ProvisioningResult:
        run = _Run(tenant_id=tenant_id or new_uuid(), domain=request.domain.lower())
        async with self._exclusive(f"domain:{run.domain}", f"tenant:{run.tenant_id}"):
            logger.info("Starting tenant provisioning for domain: %s", run.domain)
            try:
                report = await run_steps(self._provision_steps(request), run)
            except ProvisioningStepFailed as exc:
                if exc.step == "record" and isinstance(exc.cause, DomainExists):
                    raise exc.cause from None
                logger.error(
                    "Tenant provisioning failed for %s at step %s (cleanup complete: %s)",
                    run.domain, exc.step, exc.cleanup_complete,
                )
                raise

        tenant = _require(run.tenant, "tenant record")
        audit.info("tenant.created id=%s domain=%s plan=%s", run.tenant_id, run.domain, tenant.plan)
        logger.info("Tenant provisioning completed successfully for: %s", run.domain)
        return ProvisioningResult(
            tenant=tenant,
            admin=_require(run.admin, "admin credentials"),
            applied_steps=report.applied,
            skipped_steps=report.skipped,
        )

    def _provision_steps(self, request: TenantCreate) -> list[Step]:
        cfg = self.config
        return [
            Step("record", partial(self._create_record, request), self._delete_record),
            Step("database", self._create_database, self._drop_database, timeout=cfg.database_timeout),
            Step("schema", self._init_schema, self._close_connection, timeout=cfg.database_timeout),
            *self._domain_steps(),
            Step("admin", partial(self._create_admin, request), timeout=cfg.database_timeout),
            Step("activate", self._activate),
        ]

    def _domain_steps(self) -> list[Step]:
        """Steps that make a domain reachable; shared by provisioning and migration."""
        cfg = self.config
        return [
            Step(
                "dns", self._ensure_dns, self._remove_created_dns,
                timeout=cfg.dns_timeout, enabled=cfg.dns_enabled and self._dns is not None,
            ),
            Step(
                "certificate", self._issue_certificate, self._delete_certificate,
                timeout=cfg.certificate_timeout,
                enabled=cfg.tls_enabled and self._certificates is not None,
            ),
            Step(
                "proxy", self._install_proxy, self._remove_proxy,
                timeout=cfg.proxy_timeout, enabled=cfg.proxy_enabled and self._proxy is not None,
            ),
            Step(
                "verify", self._verify,
                timeout=cfg.verification_timeout,
                enabled=cfg.verification_enabled and self._probe is not None,
            ),
        ]

    async def _create_record(self, request: TenantCreate, run: _Run) -> None:
        run.tenant = await self.directory.create(request, tenant_id=run.tenant_id)

    async def _delete_record(self, run: _Run) -> None:
        await self.directory.delete(run.tenant_id)

    async def _create_database(self, run: _Run) -> None:
        name = self.registry.database_name(run.tenant_id)
        if not await self.server.create_database(name):
            # The name is derived from this tenant's id, so it can only be a leftover.
            logger.warning("Reusing leftover database %s", name)

    async def _drop_database(self, run: _Run) -> None:
        await self.registry.close(run.tenant_id)
        await self.server.drop_database(self.registry.database_name(run.tenant_id))

    async def _init_schema(self, run: _Run) -> None:
        await self.registry.acquire(run.tenant_id)

    async def _close_connection(self, run: _Run) -> None:
        await self.registry.close(run.tenant_id)

    async def _ensure_dns(self, run: _Run) -> StepOutcome:
        dns = _require(self._dns, "DNS provider")
        if self.config.covered_by_wildcard(run.domain):
            logger.info("%s is covered by the wildcard record, skipping DNS", run.domain)
            return StepOutcome.SKIPPED
        run.dns_record = await ensure_a_record(
            dns, run.domain, self.config.server_ip, proxied=self.config.dns_proxied
        )
        return StepOutcome.SKIPPED if run.dns_record is None else StepOutcome.APPLIED

    async def _remove_created_dns(self, run: _Run) -> None:
        dns = _require(self._dns, "DNS provider")
        if run.dns_record is not None:
            await dns.delete_record(run.dns_record.id)
            run.dns_record = None

    async def _issue_certificate(self, run: _Run) -> StepOutcome:
        certificates = _require(self._certificates, "certificate authority")
        if await certificates.has_valid_certificate(run.domain):
            logger.info("Valid certificate already present for %s", run.domain)
            return StepOutcome.SKIPPED
        await certificates.issue_certificate(run.domain, self.config.challenge)
        return StepOutcome.APPLIED

    async def _delete_certificate(self, run: _Run) -> None:
        await _require(self._certificates, "certificate authority").delete_certificate(run.domain)

    async def _install_proxy(self, run: _Run) -> None:
        proxy = _require(self._proxy, "reverse proxy")
        await proxy.install(run.domain)
        try:
            await proxy.validate()
            await proxy.reload()
        except BaseException:
            # Never leave an unvalidated fragment behind for the next reload.
            await proxy.remove(run.domain)
            raise

    async def _remove_proxy(self, run: _Run) -> None:
        proxy = _require(self._proxy, "reverse proxy")
        if await proxy.remove(run.domain):
            await proxy.reload()

    async def _verify(self, run: _Run) -> None:
        await _require(self._probe, "health check").verify(run.domain)

    async def _create_admin(self, request: TenantCreate, run: _Run) -> None:
        password = generate_temporary_password()
        first_name, last_name = split_name(request.contact_name)
        connection = await self.registry.acquire(run.tenant_id)
        async with connection.session() as session:
            user = await create_user(
                session,
                email=str(request.contact_email),
                password=password,
                first_name=first_name,
                last_name=last_name,
                role=UserRole.SUPER_ADMIN,
                email_verified=True,
                must_change_password=True,
            )
        run.admin = AdminCredentials(email=user.email, temporary_password=password)
        logger.info("Default admin user created for tenant %s", run.tenant_id)

    async def _activate(self, run: _Run) -> None:
        run.tenant = await self.directory.set_status(run.tenant_id, TenantStatus.ACTIVE)

    # ── Deprovisioning ───────────────────────────────────────

    async def deprovision(
        self, tenant_id: uuid.UUID, *, revoke_certificate: bool = True
    ) -> DeprovisionResult:
        """Tear down every resource of a tenant, then delete its record.

        Each teardown is independent; failures are logged and reported but
        never stop the remaining ones.
        """
        async with self._exclusive(f"tenant:{tenant_id}"):
            # Read under the tenant lock so a migration cannot move the domain first.
            tenant = await self.directory.require(tenant_id)
            async with self._exclusive(f"domain:{tenant.domain}"):
                run = _Run(tenant_id=tenant_id, domain=tenant.domain, tenant=tenant)
                steps = [
                    Step("database", _noop, self._drop_database, timeout=self.config.database_timeout),
                    *self._teardown_steps(revoke_certificate=revoke_certificate),
                ]
                failures = await run_compensations(steps, run)
                await self.directory.delete(tenant_id)

        failed = [f.step for f in failures]
        audit.info("tenant.deleted id=%s domain=%s cleanup_failed=%s", tenant_id, tenant.domain, failed)
        return DeprovisionResult(tenant_id=tenant_id, domain=tenant.domain, cleanup_failed_steps=failed)

    def _teardown_steps(self, *, revoke_certificate: bool) -> list[Step]:
        """Best-effort removal of a domain's external resources, in provisioning order."""
        cfg = self.config
        steps = []
        if cfg.dns_enabled and self._dns is not None:
            steps.append(Step("dns", _noop, self._remove_domain_dns, timeout=cfg.dns_timeout))
        if revoke_certificate and cfg.tls_enabled and self._certificates is not None:
            steps.append(Step("certificate", _noop, self._revoke_certificate, timeout=cfg.certificate_timeout))
        if cfg.proxy_enabled and self._proxy is not None:
            steps.append(Step("proxy", _noop, self._remove_proxy, timeout=cfg.proxy_timeout))
        return steps

    async def _remove_domain_dns(self, run: _Run) -> None:
        dns = _require(self._dns, "DNS provider")
        if not self.config.covered_by_wildcard(run.domain):
            await remove_domain_records(dns, run.domain)

    async def _revoke_certificate(self, run: _Run) -> None:
        certificates = _require(self._certificates, "certificate authority")
        if await certificates.has_valid_certificate(run.domain):
            await certificates.delete_certificate(run.domain)

    # ── Domain migration ─────────────────────────────────────

    async def migrate_domain(self, tenant_id: uuid.UUID, new_domain: str) -> MigrationResult:
        """Move a tenant to a new domain without an unreachable window.

        The new domain is made reachable and verified first; only then is the
        record switched and the old domain torn down.
        """
        new_domain = new_domain.lower()
        tenant = await self.directory.require(tenant_id)
        old_domain = tenant.domain
        if new_domain == old_domain:
            raise DomainExists(new_domain)

        async with self._exclusive(f"tenant:{tenant_id}", f"domain:{new_domain}"):
            tenant = await self.directory.require(tenant_id)
            if tenant.status == TenantStatus.PROVISIONING:
                raise TenantBusy(f"tenant:{tenant_id}")
            if await self.directory.domain_taken(new_domain, exclude=tenant_id):
                raise DomainExists(new_domain)

            logger.info("Migrating tenant %s from %s to %s", tenant_id, old_domain, new_domain)
            run = _Run(tenant_id=tenant_id, domain=new_domain, tenant=tenant)
            await run_steps(
                [
                    *self._domain_steps(),
                    Step("record", self._switch_domain, self._restore_domain(old_domain)),
                ],
                run,
            )

            old = _Run(tenant_id=tenant_id, domain=old_domain)
            failures = await run_compensations(self._teardown_steps(revoke_certificate=True), old)

        failed = [f.step for f in failures]
        audit.info(
            "tenant.domain_migrated id=%s from=%s to=%s cleanup_failed=%s",
            tenant_id, old_domain, new_domain, failed,
        )
        return MigrationResult(
            tenant=run.tenant or tenant, old_domain=old_domain, new_domain=new_domain, cleanup_failed_steps=failed,
        )

    async def _switch_domain(self, run: _Run) -> None:
        run.tenant = await self.directory.update_domain(run.tenant_id, run.domain)

    def _restore_domain(self, old_domain: str):
        async def restore(run: _Run) -> None:
            run.tenant = await self.directory.update_domain(run.tenant_id, old_domain)
        return restore

    # ── Status ───────────────────────────────────────────────

    async def status(self, tenant_id: uuid.UUID) -> TenantStatusReport:
        tenant = await self.directory.require(tenant_id)
        report = TenantStatusReport(
            tenant_id=tenant.id,
            domain=tenant.domain,
            directory_status=TenantStatus(tenant.status),
            database_reachable=await self.registry.ping(tenant.id),
        )
        if self.config.dns_enabled and self._dns is not None:
            try:
                report.dns_record = self.config.covered_by_wildcard(tenant.domain) or bool(
                    await self._dns.list_records(tenant.domain)
                )
            except ExternalServiceError:
                logger.warning("DNS lookup failed for %s", tenant.domain, exc_info=True)
                report.dns_record = False
        if self._proxy is not None:
            report.proxy_configured = self._proxy.is_configured(tenant.domain)
        if self._certificates is not None:
            report.certificate_valid = await self._certificates.has_valid_certificate(tenant.domain)
        if self.config.verification_enabled and self._probe is not None:
            report.domain_reachable = await self._probe.check(tenant.domain)
        return report

    # ── Administrative changes ───────────────────────────────

    async def change_status(self, tenant_id: uuid.UUID, status: TenantStatus) -> Tenant:
        """Suspend, reactivate or deactivate a tenant.

        Activation of a tenant that is still provisioning belongs to ``provision``.
        """
        async with self._exclusive(f"tenant:{tenant_id}"):
            tenant = await self.directory.require(tenant_id)
            if tenant.status == TenantStatus.PROVISIONING:
                raise InvalidStatusTransition(tenant.status, status)
            tenant = await self.directory.set_status(tenant_id, status)
        audit.info("tenant.status_changed id=%s status=%s", tenant_id, tenant.status)
        return tenant

    async def bulk(self, action: BulkAction, tenant_ids: list[uuid.UUID]) -> list[BulkItemResult]:
        """Apply one action to many tenants; each id succeeds or fails on its own."""
        results = []
        for tenant_id in dict.fromkeys(tenant_ids):
            try:
                if action == BulkAction.DELETE:
                    removed = await self.deprovision(tenant_id)
                    item = BulkItemResult(
                        tenant_id, True, cleanup_failed_steps=removed.cleanup_failed_steps
                    )
                else:
                    tenant = await self.change_status(tenant_id, _BULK_STATUS[action])
                    item = BulkItemResult(tenant_id, True, status=TenantStatus(tenant.status))
            except TenantError as exc:
                logger.warning("Bulk %s failed for tenant %s: %s", action, tenant_id, exc.message)
                item = BulkItemResult(tenant_id, False, error=exc.to_dict())
            results.append(item)

        succeeded = sum(1 for r in results if r.success)
        audit.info(
            "tenant.bulk_operation action=%s requested=%d succeeded=%d failed=%d",
            action, len(results), succeeded, len(results) - succeeded,
        )
        return results

    # ── Internals ────────────────────────────────────────────

    def is_busy(self, key: str) -> bool:
        return self._locks.locked(key)

    @asynccontextmanager
    async def _exclusive(self, *keys: str) -> AsyncIterator[None]:
        """Hold every key's lock, or fail with TenantBusy if any is taken."""
        for key in keys:
            if self._locks.locked(key):
                raise TenantBusy(key)
        async with AsyncExitStack() as stack:
            for key in keys:
                await stack.enter_async_context(self._locks.hold(key))
            yield


async def _noop(run: _Run) -> None:
    return None


def _require(value: T | None, what: str) -> T:
    if value is None:
        raise RuntimeError(f"{what} is missing")
    return value
