"""create tenants directory table

Revision ID: 3f1a9c2d7b60
Revises: 
Create Date: 2026-10-19 09:12:44.103822

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2d7b60'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("name", sa.String(100), nullable=False),
        sa.Column("domain", sa.String(255), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=True),
        sa.Column("database_name", sa.String(100), nullable=False, unique=True),
        sa.Column(
            "status",
            sa.Enum("PROVISIONING", "ACTIVE", "INACTIVE", "SUSPENDED", name="tenantstatus"),
            nullable=False,
        ),
        sa.Column(
            "plan",
            sa.Enum("TRIAL", "BASIC", "PROFESSIONAL", "ENTERPRISE", name="tenantplan"),
            nullable=False,
        ),
        sa.Column("limits", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("settings", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("contact_name", sa.String(100), nullable=False),
        sa.Column("contact_email", sa.String(320), nullable=False),
        sa.Column("trial_ends_at", sa.DateTime(), nullable=True),
        sa.Column("last_activity", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_tenants_domain", "tenants", ["domain"], unique=True)
    op.create_index("ix_tenants_subdomain", "tenants", ["subdomain"], unique=True)
    op.create_index("ix_tenants_status", "tenants", ["status"])
    op.create_index("ix_tenants_plan", "tenants", ["plan"])


def downgrade() -> None:
    op.drop_index("ix_tenants_plan", table_name="tenants")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_index("ix_tenants_subdomain", table_name="tenants")
    op.drop_index("ix_tenants_domain", table_name="tenants")
    op.drop_table("tenants")
    sa.Enum(name="tenantplan").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="tenantstatus").drop(op.get_bind(), checkfirst=True)
