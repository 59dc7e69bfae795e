"""Create user accounts and count content inside a tenant database."""

import logging
from datetime import timedelta

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import select

from tenantcms.core.exceptions import QuotaExceeded
from tenantcms.core.security import hash_password
from tenantcms.models.base import utcnow
from tenantcms.models.content import Category, News, NewsStatus, Tag
from tenantcms.models.tenant import TenantLimits
from tenantcms.models.user import User, UserRole, UserStatus

logger = logging.getLogger(__name__)

# resource name -> (model, limit attribute)
_QUOTA_RESOURCES = {
    "users": (User, "max_users"),
    "articles": (News, "max_articles"),
    "categories": (Category, "max_categories"),
    "tags": (Tag, "max_tags"),
}


def split_name(full_name: str) -> tuple[str, str]:
    parts = full_name.split()
    first = parts[0] if parts else "Admin"
    last = " ".join(parts[1:]) or "User"
    return first[:50], last[:50]


async def create_user(
    session: AsyncSession,
    *,
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    role: UserRole = UserRole.CONTRIBUTOR,
    email_verified: bool = False,
    must_change_password: bool = False,
) -> User:
    user = User(
        email=email.lower(),
        password_hash=hash_password(password),
        first_name=first_name,
        last_name=last_name,
        role=role,
        status=UserStatus.ACTIVE,
        email_verified=email_verified,
        must_change_password=must_change_password,
    )
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def count_resource(session: AsyncSession, resource: str) -> int:
    model, _ = _QUOTA_RESOURCES[resource]
    stmt = select(func.count()).select_from(model)
    if model is User:
        stmt = stmt.where(User.status == UserStatus.ACTIVE)
    return (await session.execute(stmt)).scalar_one()


async def usage(session: AsyncSession) -> dict[str, int]:
    return {name: await count_resource(session, name) for name in _QUOTA_RESOURCES}


def usage_percentage(used: int, limit: int) -> float:
    return round(used / limit * 100, 2) if limit else 0.0


def usage_percentages(counts: dict[str, int], limits: TenantLimits) -> dict[str, float]:
    return {
        name: usage_percentage(counts[name], getattr(limits, attr))
        for name, (_, attr) in _QUOTA_RESOURCES.items()
    }


async def enforce_limit(session: AsyncSession, limits: TenantLimits, resource: str) -> None:
    """Raise QuotaExceeded if the tenant already holds its maximum of ``resource``."""
    _, attr = _QUOTA_RESOURCES[resource]
    maximum = getattr(limits, attr)
    if await count_resource(session, resource) >= maximum:
        raise QuotaExceeded(resource, maximum)


async def content_stats(session: AsyncSession, *, recent_days: int = 30) -> dict[str, int]:
    """Article counts by state, total views and articles created in the last ``recent_days``."""

    async def count(*conditions) -> int:
        stmt = select(func.count()).select_from(News).where(*conditions)
        return (await session.execute(stmt)).scalar_one()

    views = await session.execute(select(func.coalesce(func.sum(News.views_count), 0)))
    return {
        "published_articles": await count(News.status == NewsStatus.PUBLISHED),
        "draft_articles": await count(News.status == NewsStatus.DRAFT),
        "total_views": int(views.scalar_one()),
        "recent_activity": await count(News.created_at >= utcnow() - timedelta(days=recent_days)),
    }
