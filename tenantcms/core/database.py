"""Async engine and session factory for the shared tenant directory."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from tenantcms.core.config import get_settings
from tenantcms.models import DIRECTORY_TABLES

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=10,
    max_overflow=5,
    pool_timeout=30,
    pool_pre_ping=True,
)

async_session_factory = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db(bind: AsyncEngine = engine) -> None:
    """Create the directory tables. Use Alembic migrations in production."""
    async with bind.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all, tables=DIRECTORY_TABLES)
