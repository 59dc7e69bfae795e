"""Typed failures for tenant resolution, connections and provisioning.

Every error carries an HTTP status, a stable ``code`` and a ``details``
mapping. The API layer renders them as structured JSON so callers can tell
"tenant doesn't exist" apart from "tenant's database is temporarily down".
"""

from __future__ import annotations

from typing import Any


class TenantError(Exception):
    """Base class for all tenant-plane errors."""

    status_code: int = 500
    code: str = "TENANT_ERROR"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.details}


# ── Resolution (user-facing, no retry) ───────────────────────

class TenantNotFound(TenantError):
    status_code = 404
    code = "TENANT_NOT_FOUND"

    def __init__(self, host: str, *, message: str | None = None) -> None:
        self.host = host
        super().__init__(
            message or f"No tenant is configured for '{host}'",
            details={
                "domain": host,
                "hint": (
                    "Check that the domain is spelled correctly and that the "
                    "tenant has finished provisioning. Custom domains must "
                    "point at this platform's serving IP."
                ),
            },
        )


class TenantInactive(TenantError):
    status_code = 403
    code = "TENANT_INACTIVE"

    def __init__(self, host: str) -> None:
        super().__init__(f"Tenant for '{host}' is not active", details={"domain": host})


class TenantSuspended(TenantError):
    status_code = 403
    code = "TENANT_SUSPENDED"

    def __init__(self, host: str) -> None:
        super().__init__(
            f"Tenant for '{host}' is suspended",
            details={"domain": host, "hint": "Contact the platform administrator."},
        )


class TrialExpired(TenantError):
    status_code = 402
    code = "TRIAL_EXPIRED"

    def __init__(self, host: str, trial_ends_at: Any) -> None:
        super().__init__(
            "Trial period has expired",
            details={"domain": host, "trial_ends_at": str(trial_ends_at)},
        )


class TenantLookupFailed(TenantError):
    status_code = 503
    code = "TENANT_LOOKUP_FAILED"


# ── Directory preconditions ───────────────────────────────────

class DomainExists(TenantError):
    status_code = 409
    code = "DOMAIN_EXISTS"

    def __init__(self, domain: str, subdomain: str | None = None) -> None:
        taken = domain if subdomain is None else f"{domain} / {subdomain}"
        super().__init__(
            f"Domain or subdomain already exists: {taken}",
            details={"domain": domain, "subdomain": subdomain},
        )


class UnknownTenant(TenantError):
    """Administrative lookup by id found nothing."""

    status_code = 404
    code = "TENANT_NOT_FOUND"

    def __init__(self, tenant_id: Any) -> None:
        super().__init__(f"Tenant '{tenant_id}' not found", details={"tenant_id": str(tenant_id)})


class InvalidStatusTransition(TenantError):
    status_code = 409
    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot change tenant status from '{current}' to '{target}'",
            details={"current": current, "target": target},
        )


class TenantBusy(TenantError):
    status_code = 409
    code = "TENANT_BUSY"

    def __init__(self, key: str) -> None:
        super().__init__(
            f"A lifecycle operation is already running for '{key}'",
            details={"key": key},
        )


class QuotaExceeded(TenantError):
    status_code = 402
    code = "LIMIT_EXCEEDED"

    def __init__(self, resource: str, limit: int) -> None:
        super().__init__(
            f"{resource.capitalize()} limit exceeded. Maximum allowed: {limit}",
            details={"resource": resource, "limit": limit},
        )


class FeatureNotAvailable(TenantError):
    status_code = 403
    code = "FEATURE_NOT_AVAILABLE"

    def __init__(self, feature: str) -> None:
        super().__init__(
            f"Feature '{feature}' is not available in your plan",
            details={"feature": feature},
        )


# ── Connections (retryable after backoff) ─────────────────────

class DatabaseUnreachable(TenantError):
    status_code = 503
    code = "DATABASE_UNREACHABLE"

    def __init__(self, tenant_id: Any, cause: BaseException | None = None) -> None:
        self.cause = cause
        super().__init__(
            "Tenant database is temporarily unavailable",
            details={"tenant_id": str(tenant_id), "retryable": True},
        )


class UnknownTenantDatabase(TenantError):
    status_code = 503
    code = "UNKNOWN_TENANT_DATABASE"

    def __init__(self, tenant_id: Any, database_name: str) -> None:
        super().__init__(
            f"Database '{database_name}' does not exist",
            details={"tenant_id": str(tenant_id), "database": database_name, "retryable": True},
        )


# ── External collaborators ───────────────────────────────────

class ExternalServiceError(TenantError):
    status_code = 502
    code = "EXTERNAL_SERVICE_ERROR"


class CommandFailed(ExternalServiceError):
    code = "COMMAND_FAILED"

    def __init__(self, argv: list[str], returncode: int | None, output: str = "") -> None:
        self.argv = argv
        self.returncode = returncode
        self.output = output
        reason = "timed out" if returncode is None else f"exited with {returncode}"
        super().__init__(
            f"Command '{' '.join(argv)}' {reason}",
            details={"output": output[-2000:]},
        )


# ── Orchestration ─────────────────────────────────────────────

class CleanupFailed(TenantError):
    """A compensation step failed. Logged, never surfaced as primary."""

    code = "CLEANUP_FAILED"

    def __init__(self, step: str, cause: BaseException) -> None:
        self.step = step
        self.cause = cause
        super().__init__(f"Cleanup of step '{step}' failed: {cause}", details={"step": step})


class ProvisioningStepFailed(TenantError):
    status_code = 502
    code = "PROVISIONING_FAILED"

    def __init__(
        self,
        step: str,
        cause: BaseException,
        *,
        cleanup_failures: list[CleanupFailed] | None = None,
    ) -> None:
        self.step = step
        self.cause = cause
        self.cleanup_failures = cleanup_failures or []
        super().__init__(
            f"Step '{step}' failed: {str(cause) or type(cause).__name__}",
            details={
                "step": step,
                "cause": type(cause).__name__,
                "cleanup_complete": self.cleanup_complete,
                "cleanup_failed_steps": [f.step for f in self.cleanup_failures],
            },
        )

    @property
    def cleanup_complete(self) -> bool:
        return not self.cleanup_failures
