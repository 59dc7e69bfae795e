"""The users table, which lives in each tenant's own database."""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlmodel import Field, SQLModel

from tenantcms.models.base import TimestampMixin, new_uuid


class UserRole(StrEnum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    EDITOR = "editor"
    CONTRIBUTOR = "contributor"


class UserStatus(StrEnum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"


class User(TimestampMixin, SQLModel, table=True):
    __tablename__ = "users"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    email: str = Field(max_length=255, unique=True, nullable=False, index=True)
    password_hash: str = Field(nullable=False)
    first_name: str = Field(max_length=50, nullable=False)
    last_name: str = Field(max_length=50, nullable=False)
    role: UserRole = Field(default=UserRole.CONTRIBUTOR, index=True)
    status: UserStatus = Field(default=UserStatus.ACTIVE, index=True)
    email_verified: bool = Field(default=False)
    must_change_password: bool = Field(default=False)
    timezone: str = Field(default="UTC", max_length=50)
    language: str = Field(default="en", max_length=5)
    last_login: datetime | None = Field(default=None)
    login_count: int = Field(default=0)

    @property
    def is_active(self) -> bool:
        return self.status == UserStatus.ACTIVE


# ── Pydantic schemas ─────────────────────────────────────────

class UserCreate(SQLModel):
    email: str = Field(max_length=255)
    password: str = Field(min_length=8, max_length=128)
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)
    role: UserRole = UserRole.CONTRIBUTOR


class UserRead(SQLModel):
    id: uuid.UUID
    email: str
    first_name: str
    last_name: str
    role: UserRole
    status: UserStatus
    email_verified: bool
    must_change_password: bool
    last_login: datetime | None
