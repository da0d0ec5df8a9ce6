"""Repository classes providing access to the tenant synchronization store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (or relying on :func:`~sync_core.state.database.session_scope`).

Status changes are issued as single-row ``UPDATE`` statements guarded by the
row's current status.  A guarded update that matches no row means another
writer got there first; the caller re-reads and decides again.
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from sync_core.errors import DuplicateSubdomainError
from sync_core.state.tables import (
    CrmUserTable,
    OutboundEventTable,
    TenantEventTable,
    TenantTable,
    WorkspaceTable,
)

logger = logging.getLogger(__name__)

# Outbound event statuses.
EVENT_PENDING = "pending"
EVENT_SENDING = "sending"
EVENT_SENT = "sent"
EVENT_FAILED = "failed"

_DELIVERABLE = (EVENT_PENDING, EVENT_FAILED)


def _earlier_event_waiting(not_due_at: datetime | None = None) -> Any:
    """EXISTS clause: an older event of the same tenant still owes a delivery.

    Exhausted events no longer hold their tenant back.  With *not_due_at*,
    older events that are themselves due are ignored: they sort first in
    the same batch, and ``claim`` checks again once they have been sent.
    """
    earlier = aliased(OutboundEventTable)
    retryable = and_(earlier.status.in_(_DELIVERABLE), earlier.attempts < earlier.max_attempts)
    if not_due_at is not None:
        retryable = and_(retryable, earlier.next_retry_at > not_due_at)
    return (
        select(earlier.id)
        .where(
            earlier.tenant_key == OutboundEventTable.tenant_key,
            or_(
                earlier.created_at < OutboundEventTable.created_at,
                and_(earlier.created_at == OutboundEventTable.created_at, earlier.id < OutboundEventTable.id),
            ),
            or_(earlier.status == EVENT_SENDING, retryable),
        )
        .exists()
    )


def _escape_like(value: str) -> str:
    """Escape SQL LIKE metacharacters so they are treated as literal characters."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _new_id() -> str:
    return uuid.uuid4().hex


async def _guarded_update(
    session: AsyncSession,
    table: Any,
    row_id: Any,
    expected_status: str,
    values: dict[str, Any],
) -> bool:
    """``UPDATE table SET values WHERE id = row_id AND status = expected_status``.

    Returns ``True`` if exactly one row was changed.
    """
    stmt = (
        update(table)
        .where(table.id == row_id, table.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.flush()
    return (result.rowcount or 0) == 1  # type: ignore[attr-defined]


async def _count_by_status(session: AsyncSession, table: Any) -> dict[str, int]:
    stmt = select(table.status, func.count()).group_by(table.status)
    result = await session.execute(stmt)
    return {status: count for status, count in result.all()}


# ---------------------------------------------------------------------------
# TenantRepository (control plane)
# ---------------------------------------------------------------------------


class TenantRepository:
    """CRUD operations for the ``tenants`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, tenant_id: str) -> TenantTable | None:
        return await self._session.get(TenantTable, tenant_id, populate_existing=True)

    async def get_by_subdomain(self, subdomain: str) -> TenantTable | None:
        stmt = select(TenantTable).where(TenantTable.subdomain == subdomain)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_crm_workspace_id(self, crm_workspace_id: str) -> TenantTable | None:
        stmt = select(TenantTable).where(TenantTable.crm_workspace_id == crm_workspace_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def resolve(
        self,
        *,
        tenant_id: str | None = None,
        crm_workspace_id: str | None = None,
        subdomain: str | None = None,
    ) -> TenantTable | None:
        """Find a tenant by the first identifier that matches.

        Lookup order is ``tenant_id``, then ``crm_workspace_id``, then
        ``subdomain``.
        """
        if tenant_id:
            row = await self.get(tenant_id)
            if row is not None:
                return row
        if crm_workspace_id:
            row = await self.get_by_crm_workspace_id(crm_workspace_id)
            if row is not None:
                return row
        if subdomain:
            return await self.get_by_subdomain(subdomain)
        return None

    async def create(
        self,
        *,
        display_name: str,
        subdomain: str,
        owner_email: str,
        metadata: dict[str, Any] | None = None,
        tenant_id: str | None = None,
    ) -> TenantTable:
        """Insert a new tenant in ``pending`` status.

        Raises
        ------
        DuplicateSubdomainError
            If the subdomain is already assigned to another tenant.
        """
        if await self.get_by_subdomain(subdomain) is not None:
            raise DuplicateSubdomainError(subdomain)

        row = TenantTable(
            id=tenant_id or _new_id(),
            display_name=display_name,
            subdomain=subdomain,
            owner_email=owner_email.lower().strip(),
            status="pending",
            metadata_json=metadata,
        )
        try:
            self._session.add(row)
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            raise DuplicateSubdomainError(subdomain) from None
        return row

    async def update_status(self, tenant_id: str, expected_status: str, values: dict[str, Any]) -> bool:
        """Apply *values* only if the tenant is still in *expected_status*."""
        values.setdefault("updated_at", datetime.now(UTC))
        return await _guarded_update(self._session, TenantTable, tenant_id, expected_status, values)

    async def update_notes(self, tenant_id: str, notes: str | None) -> TenantTable | None:
        row = await self.get(tenant_id)
        if row is None:
            return None
        row.admin_notes = notes
        row.updated_at = datetime.now(UTC)
        await self._session.flush()
        return row

    async def list_all(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TenantTable]:
        stmt = select(TenantTable).order_by(TenantTable.created_at.desc(), TenantTable.id)
        if status:
            stmt = stmt.where(TenantTable.status == status)
        if search:
            pattern = f"%{_escape_like(search.lower())}%"
            stmt = stmt.where(
                or_(
                    func.lower(TenantTable.display_name).like(pattern, escape="\\"),
                    func.lower(TenantTable.subdomain).like(pattern, escape="\\"),
                    func.lower(TenantTable.owner_email).like(pattern, escape="\\"),
                )
            )
        stmt = stmt.limit(limit).offset(offset)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        return await _count_by_status(self._session, TenantTable)


# ---------------------------------------------------------------------------
# TenantEventRepository (control plane)
# ---------------------------------------------------------------------------


class TenantEventRepository:
    """Append-only access to the ``tenant_events`` audit log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def append(
        self,
        tenant_id: str,
        event_type: str,
        event_data: dict[str, Any] | None = None,
        *,
        triggered_by: str | None = None,
    ) -> TenantEventTable:
        row = TenantEventTable(
            tenant_id=tenant_id,
            event_type=event_type,
            event_data=event_data or {},
            triggered_by_system=triggered_by,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_for_tenant(self, tenant_id: str, *, limit: int = 100) -> list[TenantEventTable]:
        stmt = (
            select(TenantEventTable)
            .where(TenantEventTable.tenant_id == tenant_id)
            .order_by(TenantEventTable.created_at, TenantEventTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# WorkspaceRepository (data plane)
# ---------------------------------------------------------------------------


class WorkspaceRepository:
    """CRUD operations for the ``workspaces`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, workspace_id: str) -> WorkspaceTable | None:
        return await self._session.get(WorkspaceTable, workspace_id, populate_existing=True)

    async def get_by_subdomain(self, subdomain: str) -> WorkspaceTable | None:
        stmt = select(WorkspaceTable).where(WorkspaceTable.subdomain == subdomain)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        *,
        display_name: str,
        subdomain: str,
        owner_user_id: str | None,
        external_id: str | None = None,
    ) -> WorkspaceTable:
        """Insert a new workspace in ``pending`` status.

        Raises
        ------
        DuplicateSubdomainError
            If any workspace, including a deleted tombstone, holds the subdomain.
        """
        if await self.get_by_subdomain(subdomain) is not None:
            raise DuplicateSubdomainError(subdomain)

        row = WorkspaceTable(
            id=_new_id(),
            external_id=external_id,
            display_name=display_name,
            subdomain=subdomain,
            owner_user_id=owner_user_id,
            status="pending",
        )
        try:
            self._session.add(row)
            await self._session.flush()
        except IntegrityError:
            await self._session.rollback()
            raise DuplicateSubdomainError(subdomain) from None
        return row

    async def update_status(self, workspace_id: str, expected_status: str, values: dict[str, Any]) -> bool:
        """Apply *values* only if the workspace is still in *expected_status*."""
        values.setdefault("updated_at", datetime.now(UTC))
        return await _guarded_update(self._session, WorkspaceTable, workspace_id, expected_status, values)

    async def update_notes(self, workspace_id: str, notes: str | None) -> WorkspaceTable | None:
        row = await self.get(workspace_id)
        if row is None:
            return None
        row.admin_notes = notes
        row.updated_at = datetime.now(UTC)
        await self._session.flush()
        return row

    async def list_all(
        self,
        *,
        include_disabled: bool = False,
        search: str | None = None,
    ) -> list[WorkspaceTable]:
        """List workspaces, newest first.

        Deleted tombstones are never returned.  Disabled workspaces are only
        returned when *include_disabled* is set.
        """
        stmt = select(WorkspaceTable).where(WorkspaceTable.status != "deleted")
        if not include_disabled:
            stmt = stmt.where(WorkspaceTable.status != "disabled")
        if search:
            pattern = f"%{_escape_like(search.lower())}%"
            stmt = stmt.where(
                or_(
                    func.lower(WorkspaceTable.display_name).like(pattern, escape="\\"),
                    func.lower(WorkspaceTable.subdomain).like(pattern, escape="\\"),
                )
            )
        stmt = stmt.order_by(WorkspaceTable.created_at.desc(), WorkspaceTable.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        return await _count_by_status(self._session, WorkspaceTable)


# ---------------------------------------------------------------------------
# CrmUserRepository (data plane)
# ---------------------------------------------------------------------------


class CrmUserRepository:
    """Lookup and creation of workspace owners in ``crm_users``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get_by_email(self, email: str) -> CrmUserTable | None:
        stmt = select(CrmUserTable).where(CrmUserTable.email == email.lower().strip())
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def create(
        self,
        email: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> CrmUserTable:
        row = CrmUserTable(
            id=_new_id(),
            email=email.lower().strip(),
            first_name=first_name,
            last_name=last_name,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def count(self) -> int:
        result = await self._session.execute(select(func.count()).select_from(CrmUserTable))
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# OutboundEventRepository (data plane)
# ---------------------------------------------------------------------------


class OutboundEventRepository:
    """Durable outbox operations for ``outbound_events``.

    Every status change is a compare-and-set so that several drainers in
    different processes can share one table without double-sending:

    * ``claim`` moves ``pending``/``failed`` -> ``sending`` only if the row
      is still due, not exhausted and no older event of its tenant is
      still waiting, so one tenant's events go out in creation order.
      Events without a ``tenant_key`` are never held back.
    * ``mark_sent`` / ``mark_failed`` move ``sending`` -> final state only
      for the attempt count the claimer observed.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        *,
        event_type: str,
        payload: dict[str, Any],
        target_url: str,
        max_attempts: int,
        now: datetime,
        tenant_key: str | None = None,
    ) -> OutboundEventTable:
        row = OutboundEventTable(
            event_id=str(uuid.uuid4()),
            tenant_key=tenant_key,
            target_url=target_url,
            event_type=event_type,
            payload=payload,
            status=EVENT_PENDING,
            attempts=0,
            max_attempts=max_attempts,
            created_at=now,
            next_retry_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, event_id: str) -> OutboundEventTable | None:
        stmt = select(OutboundEventTable).where(OutboundEventTable.event_id == event_id)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_due(self, now: datetime, limit: int) -> list[OutboundEventTable]:
        """Return up to *limit* deliverable events in creation order."""
        stmt = (
            select(OutboundEventTable)
            .where(
                OutboundEventTable.status.in_(_DELIVERABLE),
                OutboundEventTable.attempts < OutboundEventTable.max_attempts,
                OutboundEventTable.next_retry_at <= now,
                ~_earlier_event_waiting(not_due_at=now),
            )
            .order_by(OutboundEventTable.created_at, OutboundEventTable.id)
            .limit(limit)
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def claim(self, row_id: int, now: datetime, claimed_by: str) -> bool:
        """Atomically move a due event to ``sending``; ``True`` if this caller owns it."""
        stmt = (
            update(OutboundEventTable)
            .where(
                OutboundEventTable.id == row_id,
                OutboundEventTable.status.in_(_DELIVERABLE),
                OutboundEventTable.attempts < OutboundEventTable.max_attempts,
                OutboundEventTable.next_retry_at <= now,
                ~_earlier_event_waiting(),
            )
            .values(status=EVENT_SENDING, claimed_at=now, claimed_by=claimed_by)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def mark_sent(self, row_id: int, now: datetime) -> bool:
        stmt = (
            update(OutboundEventTable)
            .where(OutboundEventTable.id == row_id, OutboundEventTable.status == EVENT_SENDING)
            .values(status=EVENT_SENT, sent_at=now, last_error=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def mark_failed(
        self,
        row_id: int,
        *,
        observed_attempts: int,
        error: str,
        next_retry_at: datetime,
    ) -> bool:
        """Record a failed attempt for an event this caller claimed."""
        stmt = (
            update(OutboundEventTable)
            .where(
                OutboundEventTable.id == row_id,
                OutboundEventTable.status == EVENT_SENDING,
                OutboundEventTable.attempts == observed_attempts,
            )
            .values(
                status=EVENT_FAILED,
                attempts=observed_attempts + 1,
                last_error=error[:2000],
                next_retry_at=next_retry_at,
                claimed_at=None,
                claimed_by=None,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def list_stale_claims(self, claimed_before: datetime) -> list[OutboundEventTable]:
        """Events stuck in ``sending`` since before *claimed_before* (crashed drainer)."""
        stmt = (
            select(OutboundEventTable)
            .where(
                OutboundEventTable.status == EVENT_SENDING,
                OutboundEventTable.claimed_at < claimed_before,
            )
            .order_by(OutboundEventTable.id)
        )
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def rearm(self, event_id: str, now: datetime) -> bool:
        """Reset a failed event so the next drain picks it up again."""
        stmt = (
            update(OutboundEventTable)
            .where(OutboundEventTable.event_id == event_id, OutboundEventTable.status == EVENT_FAILED)
            .values(status=EVENT_PENDING, attempts=0, next_retry_at=now, last_error=None)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def list_events(
        self,
        *,
        status: str | None = None,
        exhausted_only: bool = False,
        tenant_key: str | None = None,
        limit: int = 100,
    ) -> list[OutboundEventTable]:
        stmt = select(OutboundEventTable)
        if status:
            stmt = stmt.where(OutboundEventTable.status == status)
        if exhausted_only:
            stmt = stmt.where(
                OutboundEventTable.status == EVENT_FAILED,
                OutboundEventTable.attempts >= OutboundEventTable.max_attempts,
            )
        if tenant_key:
            stmt = stmt.where(OutboundEventTable.tenant_key == tenant_key)
        stmt = stmt.order_by(OutboundEventTable.created_at, OutboundEventTable.id).limit(limit)
        result = await self._session.execute(stmt.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        return await _count_by_status(self._session, OutboundEventTable)
