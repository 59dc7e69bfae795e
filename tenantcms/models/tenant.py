"""Tenant model — one row per customer in the shared directory database."""

import json
import uuid
from typing import Any
from datetime import datetime, timedelta
from enum import StrEnum

from pydantic import BaseModel, EmailStr
from pydantic import Field as PydanticField
from sqlalchemy import Text
from sqlmodel import Column, Field, SQLModel

from tenantcms.models.base import TimestampMixin, new_uuid, utcnow

TRIAL_DAYS = 30


class TenantStatus(StrEnum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class TenantPlan(StrEnum):
    TRIAL = "trial"
    BASIC = "basic"
    PROFESSIONAL = "professional"
    ENTERPRISE = "enterprise"


# Administrative transitions; provisioning -> active is owned by the orchestrator.
STATUS_TRANSITIONS: dict[TenantStatus, set[TenantStatus]] = {
    TenantStatus.PROVISIONING: {TenantStatus.ACTIVE},
    TenantStatus.ACTIVE: {TenantStatus.SUSPENDED, TenantStatus.INACTIVE},
    TenantStatus.SUSPENDED: {TenantStatus.ACTIVE, TenantStatus.INACTIVE},
    TenantStatus.INACTIVE: set(),
}


class TenantLimits(BaseModel):
    max_users: int
    max_articles: int
    max_categories: int
    max_tags: int
    storage_mb: int


PLAN_LIMITS: dict[TenantPlan, TenantLimits] = {
    TenantPlan.TRIAL: TenantLimits(
        max_users=3, max_articles=100, max_categories=10, max_tags=50, storage_mb=500,
    ),
    TenantPlan.BASIC: TenantLimits(
        max_users=10, max_articles=1000, max_categories=50, max_tags=500, storage_mb=5_000,
    ),
    TenantPlan.PROFESSIONAL: TenantLimits(
        max_users=50, max_articles=10_000, max_categories=200, max_tags=5_000, storage_mb=50_000,
    ),
    TenantPlan.ENTERPRISE: TenantLimits(
        max_users=9_999_999, max_articles=9_999_999, max_categories=9_999_999,
        max_tags=9_999_999, storage_mb=9_999_999,
    ),
}

PLAN_FEATURES: dict[TenantPlan, dict[str, bool]] = {
    TenantPlan.TRIAL: {"analytics": False, "seo": False, "advanced_editor": False, "api_access": False},
    TenantPlan.BASIC: {"analytics": True, "seo": False, "advanced_editor": False, "api_access": False},
    TenantPlan.PROFESSIONAL: {"analytics": True, "seo": True, "advanced_editor": True, "api_access": False},
    TenantPlan.ENTERPRISE: {"analytics": True, "seo": True, "advanced_editor": True, "api_access": True},
}


def database_name_for(tenant_id: uuid.UUID, prefix: str) -> str:
    """Deterministic per-tenant database name."""
    return f"{prefix}{str(tenant_id).replace('-', '_')}"


def trial_end_for(plan: TenantPlan, now: datetime | None = None) -> datetime | None:
    if plan != TenantPlan.TRIAL:
        return None
    return (now or utcnow()) + timedelta(days=TRIAL_DAYS)


class Tenant(TimestampMixin, SQLModel, table=True):
    __tablename__ = "tenants"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=100, nullable=False)
    domain: str = Field(max_length=255, unique=True, nullable=False, index=True)
    subdomain: str | None = Field(default=None, max_length=63, unique=True, index=True)
    database_name: str = Field(max_length=100, unique=True, nullable=False)

    status: TenantStatus = Field(default=TenantStatus.PROVISIONING, index=True)
    plan: TenantPlan = Field(default=TenantPlan.TRIAL, index=True)

    # Quotas and feature flags stored as JSON text.
    limits: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))
    settings: str = Field(default="{}", sa_column=Column(Text, nullable=False, server_default="{}"))

    contact_name: str = Field(max_length=100, nullable=False)
    contact_email: str = Field(max_length=320, nullable=False)

    trial_ends_at: datetime | None = Field(default=None)
    last_activity: datetime | None = Field(default=None)

    def get_limits(self) -> TenantLimits:
        raw = json.loads(self.limits or "{}")
        if not raw:
            return PLAN_LIMITS[TenantPlan(self.plan)]
        return TenantLimits.model_validate(raw)

    def get_settings(self) -> dict:
        return json.loads(self.settings or "{}")

    def has_feature(self, feature: str) -> bool:
        return self.get_settings().get("features", {}).get(feature) is True

    def is_trial_expired(self, now: datetime | None = None) -> bool:
        if self.plan != TenantPlan.TRIAL or self.trial_ends_at is None:
            return False
        return (now or utcnow()) > self.trial_ends_at


# ── Pydantic schemas ─────────────────────────────────────────

class TenantCreate(BaseModel):
    name: str = PydanticField(min_length=2, max_length=100)
    domain: str = PydanticField(
        max_length=255,
        pattern=r"^[a-zA-Z0-9][a-zA-Z0-9.-]*[a-zA-Z0-9]\.[a-zA-Z]{2,}$",
    )
    subdomain: str | None = PydanticField(default=None, min_length=3, max_length=63, pattern=r"^[a-z0-9-]+$")
    contact_name: str = PydanticField(min_length=2, max_length=100)
    contact_email: EmailStr
    plan: TenantPlan = TenantPlan.TRIAL


class TenantRead(SQLModel):
    id: uuid.UUID
    name: str
    domain: str
    subdomain: str | None
    status: TenantStatus
    plan: TenantPlan
    limits: TenantLimits
    settings: dict
    contact_name: str
    contact_email: str
    trial_ends_at: datetime | None
    last_activity: datetime | None
    created_at: datetime

    @classmethod
    def from_tenant(cls, tenant: Tenant) -> "TenantRead":
        data = tenant.model_dump(exclude={"limits", "settings", "database_name"})
        return cls(**data, limits=tenant.get_limits(), settings=tenant.get_settings())


class TenantStatusUpdate(BaseModel):
    status: TenantStatus


class TenantUpdate(BaseModel):
    """Partial update; ``settings`` and ``limits`` are merged into the stored values."""

    name: str | None = PydanticField(default=None, min_length=2, max_length=100)
    contact_name: str | None = PydanticField(default=None, min_length=2, max_length=100)
    contact_email: EmailStr | None = None
    plan: TenantPlan | None = None
    settings: dict[str, Any] | None = None
    limits: dict[str, int] | None = None


class BulkAction(StrEnum):
    SUSPEND = "suspend"
    ACTIVATE = "activate"
    DELETE = "delete"


class BulkOperation(BaseModel):
    action: BulkAction
    tenant_ids: list[uuid.UUID] = PydanticField(min_length=1, max_length=100)
