"""Unit tests for the store repositories.

These tests use an in-memory SQLite database via aiosqlite so they can
run without a PostgreSQL instance.

Covers:
- Tenant creation, lookup order and guarded status updates
- Workspace tombstones keeping their subdomain
- Outbound event claim/mark compare-and-set behaviour
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sync_core.errors import DuplicateSubdomainError
from sync_core.state.repository import (
    CrmUserRepository,
    OutboundEventRepository,
    TenantEventRepository,
    TenantRepository,
    WorkspaceRepository,
)

_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Tenants
# ---------------------------------------------------------------------------


class TestTenantRepository:
    @pytest.mark.asyncio
    async def test_create_starts_pending(self, session) -> None:
        repo = TenantRepository(session)
        tenant = await repo.create(display_name="Acme", subdomain="acme", owner_email=" Jane@Example.com ")
        assert tenant.status == "pending"
        assert tenant.owner_email == "jane@example.com"
        assert tenant.crm_workspace_id is None
        assert tenant.created_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_duplicate_subdomain(self, session) -> None:
        repo = TenantRepository(session)
        await repo.create(display_name="Acme", subdomain="acme", owner_email="a@example.com")
        with pytest.raises(DuplicateSubdomainError):
            await repo.create(display_name="Acme 2", subdomain="acme", owner_email="b@example.com")

    @pytest.mark.asyncio
    async def test_resolve_order(self, session) -> None:
        repo = TenantRepository(session)
        first = await repo.create(display_name="One", subdomain="one", owner_email="one@example.com")
        second = await repo.create(display_name="Two", subdomain="two", owner_email="two@example.com")
        assert await repo.update_status(second.id, "pending", {"crm_workspace_id": "ws-2"})

        # tenant_id wins over the other identifiers.
        assert (await repo.resolve(tenant_id=first.id, crm_workspace_id="ws-2")).id == first.id
        # An unknown tenant_id falls through to crm_workspace_id, then subdomain.
        assert (await repo.resolve(tenant_id="missing", crm_workspace_id="ws-2")).id == second.id
        assert (await repo.resolve(crm_workspace_id="missing", subdomain="one")).id == first.id
        assert await repo.resolve(subdomain="nope") is None
        assert await repo.resolve() is None

    @pytest.mark.asyncio
    async def test_guarded_update_requires_expected_status(self, session) -> None:
        repo = TenantRepository(session)
        tenant = await repo.create(display_name="Acme", subdomain="acme", owner_email="a@example.com")

        assert await repo.update_status(tenant.id, "pending", {"status": "active"})
        assert not await repo.update_status(tenant.id, "pending", {"status": "deleted"})
        assert (await repo.get(tenant.id)).status == "active"

    @pytest.mark.asyncio
    async def test_list_filters(self, session) -> None:
        repo = TenantRepository(session)
        acme = await repo.create(display_name="Acme Corp", subdomain="acme", owner_email="a@example.com")
        await repo.create(display_name="Globex", subdomain="globex", owner_email="g@example.com")
        await repo.update_status(acme.id, "pending", {"status": "active"})

        assert [t.subdomain for t in await repo.list_all(status="active")] == ["acme"]
        assert [t.subdomain for t in await repo.list_all(search="GLOB")] == ["globex"]
        assert await repo.list_all(search="%") == []
        assert len(await repo.list_all(limit=1)) == 1
        assert await repo.count_by_status() == {"active": 1, "pending": 1}

    @pytest.mark.asyncio
    async def test_update_notes(self, session) -> None:
        repo = TenantRepository(session)
        tenant = await repo.create(display_name="Acme", subdomain="acme", owner_email="a@example.com")
        updated = await repo.update_notes(tenant.id, "VIP")
        assert updated.admin_notes == "VIP"
        assert await repo.update_notes("missing", "x") is None

    @pytest.mark.asyncio
    async def test_event_log_is_ordered(self, session) -> None:
        tenants = TenantRepository(session)
        events = TenantEventRepository(session)
        tenant = await tenants.create(display_name="Acme", subdomain="acme", owner_email="a@example.com")
        await events.append(tenant.id, "created", {"a": 1}, triggered_by="control-plane")
        await events.append(tenant.id, "activated", triggered_by="crm-webhook")

        rows = await events.list_for_tenant(tenant.id)
        assert [r.event_type for r in rows] == ["created", "activated"]
        assert rows[0].event_data == {"a": 1}
        assert rows[1].event_data == {}
        assert rows[1].triggered_by_system == "crm-webhook"


# ---------------------------------------------------------------------------
# Workspaces and users
# ---------------------------------------------------------------------------


class TestWorkspaceRepository:
    @pytest.mark.asyncio
    async def test_deleted_workspace_keeps_its_subdomain(self, session) -> None:
        repo = WorkspaceRepository(session)
        ws = await repo.create(display_name="Acme", subdomain="acme", owner_user_id=None)
        assert await repo.update_status(ws.id, "pending", {"status": "deleted"})

        with pytest.raises(DuplicateSubdomainError):
            await repo.create(display_name="Acme again", subdomain="acme", owner_user_id=None)

    @pytest.mark.asyncio
    async def test_list_hides_deleted_and_optionally_disabled(self, session) -> None:
        repo = WorkspaceRepository(session)
        active = await repo.create(display_name="Active", subdomain="active", owner_user_id=None)
        disabled = await repo.create(display_name="Disabled", subdomain="disabled", owner_user_id=None)
        deleted = await repo.create(display_name="Deleted", subdomain="deleted", owner_user_id=None)
        await repo.update_status(active.id, "pending", {"status": "active"})
        await repo.update_status(disabled.id, "pending", {"status": "disabled"})
        await repo.update_status(deleted.id, "pending", {"status": "deleted"})

        assert {w.subdomain for w in await repo.list_all()} == {"active"}
        assert {w.subdomain for w in await repo.list_all(include_disabled=True)} == {"active", "disabled"}
        assert {w.subdomain for w in await repo.list_all(include_disabled=True, search="dis")} == {"disabled"}

    @pytest.mark.asyncio
    async def test_users_are_matched_case_insensitively(self, session) -> None:
        repo = CrmUserRepository(session)
        user = await repo.create("Jane@Example.com", first_name="Jane")
        assert (await repo.get_by_email("jane@example.COM")).id == user.id
        assert await repo.count() == 1


# ---------------------------------------------------------------------------
# Outbound events
# ---------------------------------------------------------------------------


async def _enqueue(repo: OutboundEventRepository, *, now: datetime = _NOW, tenant_key: str = "t-1", max_attempts=3):
    return await repo.enqueue(
        event_type="tenant.created",
        payload={"tenant_id": tenant_key},
        target_url="http://control/api/v1/webhooks/tenant",
        max_attempts=max_attempts,
        now=now,
        tenant_key=tenant_key,
    )


class TestOutboundEventRepository:
    @pytest.mark.asyncio
    async def test_enqueue_is_due_immediately(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo)
        assert event.status == "pending"
        assert event.attempts == 0
        assert [e.id for e in await repo.list_due(_NOW, 10)] == [event.id]
        assert await repo.list_due(_NOW - timedelta(seconds=1), 10) == []

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo)

        assert await repo.claim(event.id, _NOW, "worker-a")
        assert not await repo.claim(event.id, _NOW, "worker-b")
        row = await repo.get(event.event_id)
        assert row.status == "sending"
        assert row.claimed_by == "worker-a"

    @pytest.mark.asyncio
    async def test_claim_respects_next_retry_at(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo, now=_NOW + timedelta(minutes=5))
        assert not await repo.claim(event.id, _NOW, "worker-a")

    @pytest.mark.asyncio
    async def test_mark_failed_counts_the_attempt_once(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo)
        await repo.claim(event.id, _NOW, "worker-a")
        retry_at = _NOW + timedelta(minutes=1)

        assert await repo.mark_failed(event.id, observed_attempts=0, error="HTTP 500", next_retry_at=retry_at)
        # A second report for the same attempt is rejected.
        assert not await repo.mark_failed(event.id, observed_attempts=0, error="HTTP 500", next_retry_at=retry_at)

        row = await repo.get(event.event_id)
        assert row.status == "failed"
        assert row.attempts == 1
        assert row.last_error == "HTTP 500"
        assert row.next_retry_at == retry_at
        assert row.claimed_by is None

    @pytest.mark.asyncio
    async def test_exhausted_events_are_never_due(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo, max_attempts=1)
        await repo.claim(event.id, _NOW, "w")
        await repo.mark_failed(event.id, observed_attempts=0, error="boom", next_retry_at=_NOW)

        assert await repo.list_due(_NOW + timedelta(days=1), 10) == []
        assert not await repo.claim(event.id, _NOW + timedelta(days=1), "w")
        exhausted = await repo.list_events(exhausted_only=True)
        assert [e.event_id for e in exhausted] == [event.event_id]

    @pytest.mark.asyncio
    async def test_mark_sent(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo)
        assert not await repo.mark_sent(event.id, _NOW)  # not claimed yet
        await repo.claim(event.id, _NOW, "w")
        assert await repo.mark_sent(event.id, _NOW)
        row = await repo.get(event.event_id)
        assert row.status == "sent"
        assert row.sent_at == _NOW
        assert await repo.list_due(_NOW + timedelta(days=1), 10) == []

    @pytest.mark.asyncio
    async def test_rearm_only_touches_failed_events(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo, max_attempts=1)
        assert not await repo.rearm(event.event_id, _NOW)

        await repo.claim(event.id, _NOW, "w")
        await repo.mark_failed(event.id, observed_attempts=0, error="boom", next_retry_at=_NOW)
        later = _NOW + timedelta(hours=1)
        assert await repo.rearm(event.event_id, later)

        row = await repo.get(event.event_id)
        assert (row.status, row.attempts, row.last_error) == ("pending", 0, None)
        assert [e.id for e in await repo.list_due(later, 10)] == [event.id]
        assert not await repo.rearm("missing", later)

    @pytest.mark.asyncio
    async def test_stale_claims(self, session) -> None:
        repo = OutboundEventRepository(session)
        event = await _enqueue(repo)
        await repo.claim(event.id, _NOW, "w")
        assert await repo.list_stale_claims(_NOW) == []
        assert [e.id for e in await repo.list_stale_claims(_NOW + timedelta(seconds=1))] == [event.id]

    @pytest.mark.asyncio
    async def test_due_events_come_out_in_creation_order(self, session) -> None:
        repo = OutboundEventRepository(session)
        later = await _enqueue(repo, now=_NOW, tenant_key="b")
        earlier = await _enqueue(repo, now=_NOW - timedelta(seconds=5), tenant_key="a")
        due = await repo.list_due(_NOW, 10)
        assert [e.id for e in due] == [earlier.id, later.id]
        assert len(await repo.list_due(_NOW, 1)) == 1
        assert await repo.count_by_status() == {"pending": 2}

    @pytest.mark.asyncio
    async def test_waiting_event_holds_back_its_tenant(self, session) -> None:
        repo = OutboundEventRepository(session)
        first = await _enqueue(repo, now=_NOW - timedelta(seconds=10), tenant_key="a")
        second = await _enqueue(repo, now=_NOW - timedelta(seconds=5), tenant_key="a")
        other = await _enqueue(repo, now=_NOW, tenant_key="b")

        # Both events of tenant a are due; claiming enforces their order.
        assert [e.id for e in await repo.list_due(_NOW, 10)] == [first.id, second.id, other.id]
        assert not await repo.claim(second.id, _NOW, "w")

        assert await repo.claim(first.id, _NOW, "w")
        retry_at = _NOW + timedelta(minutes=2)
        await repo.mark_failed(first.id, observed_attempts=0, error="HTTP 503", next_retry_at=retry_at)

        # Waiting out its backoff, the failed event still blocks its successor.
        assert [e.id for e in await repo.list_due(_NOW + timedelta(seconds=15), 10)] == [other.id]
        assert not await repo.claim(second.id, _NOW + timedelta(seconds=15), "w")

        assert [e.id for e in await repo.list_due(retry_at, 10)] == [first.id, second.id, other.id]
        assert await repo.claim(first.id, retry_at, "w")
        assert await repo.mark_sent(first.id, retry_at)
        assert await repo.claim(second.id, retry_at, "w")

    @pytest.mark.asyncio
    async def test_exhausted_event_releases_its_tenant(self, session) -> None:
        repo = OutboundEventRepository(session)
        first = await _enqueue(repo, now=_NOW - timedelta(seconds=5), tenant_key="a", max_attempts=1)
        second = await _enqueue(repo, now=_NOW, tenant_key="a")
        await repo.claim(first.id, _NOW, "w")
        await repo.mark_failed(first.id, observed_attempts=0, error="boom", next_retry_at=_NOW)

        assert [e.id for e in await repo.list_due(_NOW, 10)] == [second.id]
        assert await repo.claim(second.id, _NOW, "w")
