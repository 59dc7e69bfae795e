"""Import all models so SQLModel.metadata picks them up.

The directory and the tenant databases share one metadata object but never
share tables: ``DIRECTORY_TABLES`` are created only in the shared directory
database, ``TENANT_TABLES`` only in each tenant's own database.
"""

from tenantcms.models.content import Category, News, NewsStatus, NewsTag, NewsVisibility, Tag
from tenantcms.models.tenant import (
    PLAN_LIMITS,
    Tenant,
    TenantCreate,
    TenantLimits,
    TenantPlan,
    TenantRead,
    TenantStatus,
    TenantStatusUpdate,
)
from tenantcms.models.user import User, UserCreate, UserRead, UserRole, UserStatus

DIRECTORY_TABLES = [Tenant.__table__]

TENANT_TABLES = [
    User.__table__,
    Category.__table__,
    Tag.__table__,
    News.__table__,
    NewsTag.__table__,
]

__all__ = [
    "DIRECTORY_TABLES",
    "PLAN_LIMITS",
    "TENANT_TABLES",
    "Category",
    "News",
    "NewsStatus",
    "NewsTag",
    "NewsVisibility",
    "Tag",
    "Tenant",
    "TenantCreate",
    "TenantLimits",
    "TenantPlan",
    "TenantRead",
    "TenantStatus",
    "TenantStatusUpdate",
    "User",
    "UserCreate",
    "UserRead",
    "UserRole",
    "UserStatus",
]
