"""Tenant directory — the authoritative store of tenant records."""

from __future__ import annotations

import json
import logging
import uuid

from sqlalchemy import func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from tenantcms.core.exceptions import DomainExists, InvalidStatusTransition, UnknownTenant
from tenantcms.models.base import new_uuid, utcnow
from tenantcms.models.tenant import (
    PLAN_FEATURES,
    PLAN_LIMITS,
    STATUS_TRANSITIONS,
    Tenant,
    TenantCreate,
    TenantLimits,
    TenantPlan,
    TenantStatus,
    TenantUpdate,
    database_name_for,
    trial_end_for,
)

logger = logging.getLogger(__name__)


class TenantDirectory:
    def __init__(self, session_factory: sessionmaker, *, database_prefix: str) -> None:
        self._session_factory = session_factory
        self._prefix = database_prefix

    # ── Lookups ──────────────────────────────────────────────

    async def get(self, tenant_id: uuid.UUID) -> Tenant | None:
        async with self._session_factory() as session:
            return await session.get(Tenant, tenant_id)

    async def require(self, tenant_id: uuid.UUID) -> Tenant:
        tenant = await self.get(tenant_id)
        if tenant is None:
            raise UnknownTenant(tenant_id)
        return tenant

    async def find_by_domain(self, domain: str) -> Tenant | None:
        return await self._find_one(Tenant.domain == domain.lower())

    async def find_by_subdomain(self, subdomain: str) -> Tenant | None:
        return await self._find_one(Tenant.subdomain == subdomain.lower())

    async def domain_taken(self, domain: str, *, exclude: uuid.UUID | None = None) -> bool:
        stmt = select(Tenant.id).where(Tenant.domain == domain.lower())
        if exclude is not None:
            stmt = stmt.where(Tenant.id != exclude)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def list_tenants(
        self,
        *,
        status: TenantStatus | None = None,
        plan: TenantPlan | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Tenant], int]:
        conditions = []
        if status is not None:
            conditions.append(Tenant.status == status)
        if plan is not None:
            conditions.append(Tenant.plan == plan)
        if search:
            pattern = f"%{search}%"
            conditions.append(or_(Tenant.name.ilike(pattern), Tenant.domain.ilike(pattern)))  # type: ignore[attr-defined]

        async with self._session_factory() as session:
            total = (
                await session.execute(select(func.count()).select_from(Tenant).where(*conditions))
            ).scalar_one()
            stmt = (
                select(Tenant)
                .where(*conditions)
                .order_by(Tenant.created_at.desc())  # type: ignore[attr-defined]
                .offset(offset)
                .limit(limit)
            )
            result = await session.execute(stmt)
            return list(result.scalars().all()), total

    # ── Mutations ────────────────────────────────────────────

    async def create(self, body: TenantCreate, *, tenant_id: uuid.UUID | None = None) -> Tenant:
        """Insert a tenant in ``provisioning`` state.

        Raises DomainExists when the domain or subdomain is already taken.
        """
        domain = body.domain.lower()
        subdomain = body.subdomain.lower() if body.subdomain else None

        clauses = [Tenant.domain == domain]
        if subdomain:
            clauses.append(Tenant.subdomain == subdomain)
        if await self._find_one(or_(*clauses)) is not None:
            raise DomainExists(domain, subdomain)

        tid = tenant_id or new_uuid()
        tenant = Tenant(
            id=tid,
            name=body.name,
            domain=domain,
            subdomain=subdomain,
            database_name=database_name_for(tid, self._prefix),
            status=TenantStatus.PROVISIONING,
            plan=body.plan,
            limits=PLAN_LIMITS[body.plan].model_dump_json(),
            settings=json.dumps({
                "theme": "default",
                "language": "en",
                "timezone": "UTC",
                "features": PLAN_FEATURES[body.plan],
            }),
            contact_name=body.contact_name,
            contact_email=str(body.contact_email),
            trial_ends_at=trial_end_for(body.plan),
        )
        async with self._session_factory() as session:
            session.add(tenant)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DomainExists(domain, subdomain) from exc
            await session.refresh(tenant)
        logger.info("Tenant record created: %s (%s)", tenant.id, tenant.domain)
        return tenant

    async def set_status(self, tenant_id: uuid.UUID, status: TenantStatus) -> Tenant:
        """Transition a tenant's status; the change is committed before returning."""
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise UnknownTenant(tenant_id)
            current = TenantStatus(tenant.status)
            if status != current and status not in STATUS_TRANSITIONS[current]:
                raise InvalidStatusTransition(current, status)
            tenant.status = status
            tenant.updated_at = utcnow()
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)
            return tenant

    async def update(self, tenant_id: uuid.UUID, body: TenantUpdate) -> Tenant:
        """Apply a partial update.

        A plan change resets limits and features to the plan's defaults and
        sets or clears the trial end; explicit ``limits`` are merged on top.
        """
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise UnknownTenant(tenant_id)

            for name in ("name", "contact_name"):
                value = getattr(body, name)
                if value is not None:
                    setattr(tenant, name, value)
            if body.contact_email is not None:
                tenant.contact_email = str(body.contact_email)

            settings = tenant.get_settings()
            limits = tenant.get_limits().model_dump()
            if body.plan is not None and body.plan != tenant.plan:
                tenant.plan = body.plan
                tenant.trial_ends_at = trial_end_for(body.plan)
                limits = PLAN_LIMITS[body.plan].model_dump()
                settings["features"] = PLAN_FEATURES[body.plan]
            if body.settings:
                settings.update(body.settings)
            if body.limits:
                limits.update(body.limits)

            tenant.settings = json.dumps(settings)
            tenant.limits = TenantLimits.model_validate(limits).model_dump_json()
            tenant.updated_at = utcnow()
            session.add(tenant)
            await session.commit()
            await session.refresh(tenant)
        logger.info("Tenant record updated: %s", tenant_id)
        return tenant

    async def update_domain(self, tenant_id: uuid.UUID, new_domain: str) -> Tenant:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                raise UnknownTenant(tenant_id)
            tenant.domain = new_domain.lower()
            tenant.updated_at = utcnow()
            session.add(tenant)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DomainExists(new_domain) from exc
            await session.refresh(tenant)
            return tenant

    async def delete(self, tenant_id: uuid.UUID) -> bool:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                return False
            await session.delete(tenant)
            await session.commit()
        logger.info("Tenant record deleted: %s", tenant_id)
        return True

    async def touch_activity(self, tenant_id: uuid.UUID) -> None:
        async with self._session_factory() as session:
            tenant = await session.get(Tenant, tenant_id)
            if tenant is None:
                return
            tenant.last_activity = utcnow()
            session.add(tenant)
            await session.commit()

    # ── Internals ────────────────────────────────────────────

    async def _find_one(self, condition) -> Tenant | None:
        async with self._session_factory() as session:
            result = await session.execute(select(Tenant).where(condition).limit(1))
            return result.scalar_one_or_none()
