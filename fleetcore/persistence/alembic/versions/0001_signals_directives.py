"""signals, directives, packages, installations, agents

Revision ID: 0001_signals_directives
Revises:
Create Date: 2026-10-18 09:00:00.000000
"""
from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_signals_directives"
down_revision = None
branch_labels = None
depends_on = None


def _timestamp(name: str, *, nullable: bool = False, server_default: bool = True) -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=nullable,
        server_default=sa.func.now() if server_default else None,
    )


def upgrade() -> None:
    op.create_table(
        "signals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("dedupe_key", sa.String(length=512), nullable=True),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        _timestamp("occurred_at"),
        sa.Column("correlation_id", sa.String(length=255), nullable=True),
        sa.Column("causation_id", sa.String(length=255), nullable=True),
        sa.Column("actor_type", sa.String(length=64), nullable=True),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("subject_type", sa.String(length=64), nullable=True),
        sa.Column("subject_id", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=64), nullable=True),
        _timestamp("inserted_at"),
    )
    # Partial unique index: repeated NULL dedupe keys never conflict.
    op.create_index(
        "signals_unique_dedupe_key_index",
        "signals",
        ["tenant_id", "dedupe_key"],
        unique=True,
        postgresql_where=sa.text("dedupe_key IS NOT NULL"),
    )
    op.create_index("signals_tenant_name_index", "signals", ["tenant_id", "name"])
    op.create_index("signals_tenant_occurred_at_index", "signals", ["tenant_id", "occurred_at"])
    op.create_index("signals_tenant_inserted_at_index", "signals", ["tenant_id", "inserted_at"])

    op.create_table(
        "directives",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("idempotency_key", sa.String(length=512), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="requested"),
        _timestamp("scheduled_at"),
        _timestamp("started_at", nullable=True, server_default=False),
        _timestamp("completed_at", nullable=True, server_default=False),
        sa.Column("payload", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("metadata", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("result", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("last_error_at", nullable=True, server_default=False),
        sa.Column("requested_by_user_id", sa.String(), nullable=True),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="10"),
        _timestamp("inserted_at"),
        _timestamp("updated_at"),
    )
    op.create_index(
        "directives_unique_idempotency_key_index",
        "directives",
        ["tenant_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )
    op.create_index("directives_tenant_status_index", "directives", ["tenant_id", "status"])
    op.create_index("directives_tenant_scheduled_at_index", "directives", ["tenant_id", "scheduled_at"])
    op.create_index("directives_tenant_inserted_at_index", "directives", ["tenant_id", "inserted_at"])

    # Global registry; never tenant-scoped.
    op.create_table(
        "packages",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("version", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "includes",
            postgresql.JSONB(),
            nullable=False,
            server_default=sa.text("""'{"agents": [], "workflows": [], "skills": [], "tools": []}'::jsonb"""),
        ),
        sa.Column("install_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_published", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("inserted_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("slug", name="packages_unique_slug"),
        sa.UniqueConstraint("name", "version", name="packages_unique_name_version"),
    )

    op.create_table(
        "package_installations",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("package_slug", sa.String(), nullable=False),
        sa.Column("package_version", sa.String(), nullable=False),
        sa.Column("package_name", sa.String(), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="requested"),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("installed_by_user_id", sa.String(), nullable=True),
        _timestamp("installed_at", nullable=True, server_default=False),
        sa.Column("config", postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("idempotency_key", sa.String(length=512), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _timestamp("last_error_at", nullable=True, server_default=False),
        _timestamp("inserted_at"),
        _timestamp("updated_at"),
        sa.UniqueConstraint("tenant_id", "package_slug", name="package_installations_unique_slug"),
    )
    op.create_index("ix_package_installations_tenant_id", "package_installations", ["tenant_id"])
    op.create_index(
        "package_installations_unique_idempotency_key_index",
        "package_installations",
        ["tenant_id", "idempotency_key"],
        unique=True,
        postgresql_where=sa.text("idempotency_key IS NOT NULL"),
    )

    op.create_table(
        "agents",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("tenant_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("system_prompt", sa.Text(), nullable=False),
        _timestamp("inserted_at"),
    )
    op.create_index("agents_tenant_name_index", "agents", ["tenant_id", "name"])


def downgrade() -> None:
    op.drop_index("agents_tenant_name_index", table_name="agents")
    op.drop_table("agents")
    op.drop_index("package_installations_unique_idempotency_key_index", table_name="package_installations")
    op.drop_index("ix_package_installations_tenant_id", table_name="package_installations")
    op.drop_table("package_installations")
    op.drop_table("packages")
    op.drop_index("directives_tenant_inserted_at_index", table_name="directives")
    op.drop_index("directives_tenant_scheduled_at_index", table_name="directives")
    op.drop_index("directives_tenant_status_index", table_name="directives")
    op.drop_index("directives_unique_idempotency_key_index", table_name="directives")
    op.drop_table("directives")
    op.drop_index("signals_tenant_inserted_at_index", table_name="signals")
    op.drop_index("signals_tenant_occurred_at_index", table_name="signals")
    op.drop_index("signals_tenant_name_index", table_name="signals")
    op.drop_index("signals_unique_dedupe_key_index", table_name="signals")
    op.drop_table("signals")
