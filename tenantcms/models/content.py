"""Editorial content tables — categories, tags, articles and their join table.

Only the schema lives here; it is created in every tenant database by the
schema initializer.
"""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import Text, UniqueConstraint
from sqlmodel import Column, Field, SQLModel

from tenantcms.models.base import TimestampMixin, new_uuid, utcnow


class Category(SQLModel, table=True):
    __tablename__ = "categories"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=100, unique=True, nullable=False)
    slug: str = Field(max_length=120, unique=True, nullable=False)
    description: str | None = Field(default=None, sa_column=Column(Text))
    color: str = Field(default="#3B82F6", max_length=7)
    is_featured: bool = Field(default=False, index=True)
    is_active: bool = Field(default=True)
    posts_count: int = Field(default=0)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class Tag(SQLModel, table=True):
    __tablename__ = "tags"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    name: str = Field(max_length=50, unique=True, nullable=False)
    slug: str = Field(max_length=70, unique=True, nullable=False)
    color: str = Field(default="#3B82F6", max_length=7)
    usage_count: int = Field(default=0, index=True)
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, nullable=False)


class NewsStatus(StrEnum):
    DRAFT = "draft"
    REVIEW = "review"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class NewsVisibility(StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"
    PASSWORD = "password"


class News(TimestampMixin, SQLModel, table=True):
    __tablename__ = "news"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    title: str = Field(max_length=255, nullable=False)
    slug: str = Field(max_length=300, unique=True, nullable=False)
    excerpt: str | None = Field(default=None, sa_column=Column(Text))
    content: str = Field(sa_column=Column(Text, nullable=False))
    featured_image: str | None = Field(default=None, max_length=255)
    status: NewsStatus = Field(default=NewsStatus.DRAFT, index=True)
    visibility: NewsVisibility = Field(default=NewsVisibility.PUBLIC)
    author_id: uuid.UUID = Field(foreign_key="users.id", nullable=False, index=True)
    category_id: uuid.UUID = Field(foreign_key="categories.id", nullable=False, index=True)
    published_at: datetime | None = Field(default=None, index=True)
    views_count: int = Field(default=0, index=True)
    is_featured: bool = Field(default=False, index=True)
    is_breaking: bool = Field(default=False)
    allow_comments: bool = Field(default=True)
    meta_title: str | None = Field(default=None, max_length=255)
    meta_description: str | None = Field(default=None, max_length=500)


class NewsTag(SQLModel, table=True):
    __tablename__ = "news_tags"
    __table_args__ = (UniqueConstraint("news_id", "tag_id", name="uq_news_tags_news_tag"),)

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    news_id: uuid.UUID = Field(foreign_key="news.id", nullable=False, index=True, ondelete="CASCADE")
    tag_id: uuid.UUID = Field(foreign_key="tags.id", nullable=False, index=True, ondelete="CASCADE")
    created_at: datetime = Field(default_factory=utcnow, nullable=False)
