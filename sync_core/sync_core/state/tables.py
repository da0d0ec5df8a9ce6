"""SQLAlchemy 2.0 ORM table definitions for the tenant synchronization store.

Control-plane tables (``tenants``, ``tenant_events``) and data-plane tables
(``workspaces``, ``crm_users``, ``outbound_events``) share one declarative
``Base`` so a single database can host both planes in development.  In a
split deployment each plane simply leaves the other's tables empty.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetime on every backend.

    SQLite drops tzinfo on the way back, so naive results are re-tagged as
    UTC.  Values are normalised to UTC before binding so string comparison
    on SQLite orders them correctly.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all tenant synchronization tables."""


# ---------------------------------------------------------------------------
# Control plane
# ---------------------------------------------------------------------------


class TenantTable(Base):
    """Source-of-truth tenant record owned by the control plane."""

    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(63), nullable=False)
    owner_email: Mapped[str] = mapped_column(String(320), nullable=False)
    crm_workspace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    disabled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    disabled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subdomain", name="uq_tenants_subdomain"),
        UniqueConstraint("crm_workspace_id", name="uq_tenants_crm_workspace_id"),
        CheckConstraint("status IN ('pending', 'active', 'disabled', 'deleted')", name="ck_tenants_status"),
        Index("ix_tenants_status", "status"),
    )


class TenantEventTable(Base):
    """Append-only audit log of lifecycle changes applied to a tenant."""

    __tablename__ = "tenant_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(32), nullable=False)
    event_data: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False, default=dict)
    triggered_by_system: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_tenant_events_tenant", "tenant_id", "created_at"),)


# ---------------------------------------------------------------------------
# Data plane
# ---------------------------------------------------------------------------


class WorkspaceTable(Base):
    """Data-plane mirror of a tenant.

    ``id`` is reported back to the control plane as ``crm_workspace_id``.
    Deleted workspaces are kept as tombstones so their subdomain stays
    reserved and repeated deletes converge.
    """

    __tablename__ = "workspaces"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    display_name: Mapped[str] = mapped_column(String(256), nullable=False)
    subdomain: Mapped[str] = mapped_column(String(63), nullable=False)
    owner_user_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    disabled_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    disabled_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("subdomain", name="uq_workspaces_subdomain"),
        CheckConstraint("status IN ('pending', 'active', 'disabled', 'deleted')", name="ck_workspaces_status"),
        Index("ix_workspaces_status", "status"),
        Index("ix_workspaces_external_id", "external_id"),
    )


class CrmUserTable(Base):
    """Owning-user directory for workspaces."""

    __tablename__ = "crm_users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("email", name="uq_crm_users_email"),)


class OutboundEventTable(Base):
    """Durable outbox of lifecycle notifications awaiting webhook delivery.

    Rows are only ever updated by the delivery worker (and operator
    re-arm) and are never deleted.  ``id`` is a monotonically increasing
    sequence used to break ``created_at`` ties when ordering a batch.
    """

    __tablename__ = "outbound_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_key: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    next_retry_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    claimed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        UniqueConstraint("event_id", name="uq_outbound_events_event_id"),
        CheckConstraint("status IN ('pending', 'sending', 'sent', 'failed')", name="ck_outbound_events_status"),
        CheckConstraint("attempts <= max_attempts", name="ck_outbound_events_attempts"),
        Index("ix_outbound_events_due", "status", "next_retry_at"),
        Index("ix_outbound_events_tenant", "tenant_key", "created_at"),
    )
