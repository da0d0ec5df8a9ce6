"""Initial schema for the tenant synchronization store.

Creates the control-plane ``tenants`` and ``tenant_events`` tables and the
data-plane ``workspaces``, ``crm_users`` and ``outbound_events`` tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-01 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_json = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # ------------------------------------------------------------------
    # tenants
    # ------------------------------------------------------------------
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("display_name", sa.String(256), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("owner_email", sa.String(320), nullable=False),
        sa.Column("crm_workspace_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disabled_reason", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        sa.Column("metadata", _json, nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("subdomain", name="uq_tenants_subdomain"),
        sa.UniqueConstraint("crm_workspace_id", name="uq_tenants_crm_workspace_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'disabled', 'deleted')",
            name="ck_tenants_status",
        ),
    )
    op.create_index("ix_tenants_status", "tenants", ["status"])

    # ------------------------------------------------------------------
    # tenant_events
    # ------------------------------------------------------------------
    op.create_table(
        "tenant_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("event_data", _json, nullable=False),
        sa.Column("triggered_by_system", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_tenant_events_tenant", "tenant_events", ["tenant_id", "created_at"])

    # ------------------------------------------------------------------
    # workspaces
    # ------------------------------------------------------------------
    op.create_table(
        "workspaces",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("external_id", sa.String(64), nullable=True),
        sa.Column("display_name", sa.String(256), nullable=False),
        sa.Column("subdomain", sa.String(63), nullable=False),
        sa.Column("owner_user_id", sa.String(64), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("disabled_reason", sa.Text(), nullable=True),
        sa.Column("admin_notes", sa.Text(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("subdomain", name="uq_workspaces_subdomain"),
        sa.CheckConstraint(
            "status IN ('pending', 'active', 'disabled', 'deleted')",
            name="ck_workspaces_status",
        ),
    )
    op.create_index("ix_workspaces_status", "workspaces", ["status"])
    op.create_index("ix_workspaces_external_id", "workspaces", ["external_id"])

    # ------------------------------------------------------------------
    # crm_users
    # ------------------------------------------------------------------
    op.create_table(
        "crm_users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("first_name", sa.String(128), nullable=True),
        sa.Column("last_name", sa.String(128), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("email", name="uq_crm_users_email"),
    )

    # ------------------------------------------------------------------
    # outbound_events
    # ------------------------------------------------------------------
    op.create_table(
        "outbound_events",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("event_id", sa.String(64), nullable=False),
        sa.Column("tenant_key", sa.String(64), nullable=True),
        sa.Column("target_url", sa.String(2048), nullable=False),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", _json, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("claimed_by", sa.String(128), nullable=True),
        sa.UniqueConstraint("event_id", name="uq_outbound_events_event_id"),
        sa.CheckConstraint(
            "status IN ('pending', 'sending', 'sent', 'failed')",
            name="ck_outbound_events_status",
        ),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_outbound_events_attempts"),
    )
    op.create_index("ix_outbound_events_due", "outbound_events", ["status", "next_retry_at"])
    op.create_index("ix_outbound_events_tenant", "outbound_events", ["tenant_key", "created_at"])


def downgrade() -> None:
    op.drop_index("ix_outbound_events_tenant", table_name="outbound_events")
    op.drop_index("ix_outbound_events_due", table_name="outbound_events")
    op.drop_table("outbound_events")
    op.drop_table("crm_users")
    op.drop_index("ix_workspaces_external_id", table_name="workspaces")
    op.drop_index("ix_workspaces_status", table_name="workspaces")
    op.drop_table("workspaces")
    op.drop_index("ix_tenant_events_tenant", table_name="tenant_events")
    op.drop_table("tenant_events")
    op.drop_index("ix_tenants_status", table_name="tenants")
    op.drop_table("tenants")
