"""Tests for the outbound delivery queue (transactional outbox + drain)."""

from __future__ import annotations

import asyncio
import json
from collections import Counter
from datetime import timedelta

import httpx
import pytest
from prometheus_client import REGISTRY
from sync_api.services.delivery_queue import DeliveryPolicy, OutboundDeliveryQueue
from sync_core.errors import StoreUnavailableError
from sync_core.signing import verify
from sync_core.state.database import get_session_factory
from sync_core.state.repository import OutboundEventRepository
from sync_core.state.sqlite_adapter import get_local_engine

_SECRET = "test-webhook-secret"


def _ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(200, json={"success": True})


def _server_error(request: httpx.Request) -> httpx.Response:
    return httpx.Response(500, text="boom")


def _exhausted_count(event_type: str) -> float:
    return REGISTRY.get_sample_value("tenantsync_outbound_exhausted_total", {"event_type": event_type}) or 0.0


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class TestDeliveryPolicy:
    def test_backoff_doubles(self) -> None:
        policy = DeliveryPolicy(base_delay_seconds=60)
        assert [policy.backoff(n).total_seconds() for n in (1, 2, 3, 4)] == [120, 240, 480, 960]


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_persists_pending_event(self, make_queue) -> None:
        queue = make_queue(_ok)
        event_id = await queue.enqueue("tenant.created", {"tenant_id": "t-1"}, tenant_key="ws-1")

        row = await queue.get_event(event_id)
        assert row.status == "pending"
        assert row.attempts == 0
        assert row.max_attempts == 3
        assert row.target_url == "http://test/api/v1/webhooks/tenant"
        assert row.payload == {"tenant_id": "t-1"}

    @pytest.mark.asyncio
    async def test_enqueue_joins_the_callers_transaction(self, make_queue, session_factory) -> None:
        queue = make_queue(_ok)
        async with session_factory() as session:
            event_id = await queue.enqueue("tenant.created", {}, tenant_key="ws-1", session=session)
            await session.rollback()

        assert await queue.get_event(event_id) is None
        assert await queue.drain() == 0


# ---------------------------------------------------------------------------
# Drain
# ---------------------------------------------------------------------------


class TestDrain:
    @pytest.mark.asyncio
    async def test_successful_delivery_is_signed(self, make_queue, clock) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        queue = make_queue(handler)
        event_id = await queue.enqueue("tenant.disabled", {"tenant_id": "t-1", "disabled_reason": "unpaid"})

        assert await queue.drain() == 1

        request = seen[0]
        assert str(request.url) == "http://test/api/v1/webhooks/tenant"
        assert request.headers["x-webhook-event"] == "tenant.disabled"
        assert request.headers["x-webhook-id"] == event_id
        assert verify(request.content, request.headers["x-webhook-signature"], _SECRET, now=clock.epoch())

        body = json.loads(request.content)
        assert body == {
            "event": "tenant.disabled",
            "timestamp": clock.epoch(),
            "data": {"tenant_id": "t-1", "disabled_reason": "unpaid"},
        }

        row = await queue.get_event(event_id)
        assert row.status == "sent"
        assert row.sent_at == clock.now
        assert await queue.drain() == 0

    @pytest.mark.asyncio
    async def test_retries_with_exponential_backoff_until_exhausted(self, make_queue, clock) -> None:
        calls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.headers["x-webhook-id"])
            return httpx.Response(500, text="boom")

        queue = make_queue(handler, max_attempts=3)
        event_id = await queue.enqueue("tenant.exhaust-test", {"tenant_id": "t-1"})
        exhausted_before = _exhausted_count("tenant.exhaust-test")
        started = clock.now

        retry_times = []
        for expected_attempts in (1, 2, 3):
            assert await queue.drain() == 1
            row = await queue.get_event(event_id)
            assert row.status == "failed"
            assert row.attempts == expected_attempts
            assert row.last_error.startswith("HTTP 500")
            retry_times.append(row.next_retry_at)

            # Not due again until the backoff elapses.
            assert await queue.drain() == 0
            clock.now = row.next_retry_at

        assert retry_times[0] - started == timedelta(seconds=120)
        assert retry_times[1] - retry_times[0] == timedelta(seconds=240)
        assert retry_times[2] - retry_times[1] == timedelta(seconds=480)
        assert retry_times == sorted(set(retry_times))

        clock.advance(days=30)
        assert await queue.drain() == 0
        assert calls == [event_id] * 3
        assert _exhausted_count("tenant.exhaust-test") == exhausted_before + 1

        exhausted = await queue.list_events(exhausted_only=True)
        assert [e.event_id for e in exhausted] == [event_id]

    @pytest.mark.asyncio
    async def test_timeouts_and_connection_errors_count_as_failures(self, make_queue) -> None:
        def timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        def refused(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        for handler, prefix in ((timeout, "Timeout"), (refused, "Request error")):
            queue = make_queue(handler)
            event_id = await queue.enqueue("tenant.created", {}, tenant_key=prefix)
            assert await queue.drain() == 1
            row = await queue.get_event(event_id)
            assert row.status == "failed"
            assert row.attempts == 1
            assert row.last_error.startswith(prefix)

    @pytest.mark.asyncio
    async def test_failed_event_holds_back_its_tenant_within_a_batch(self, make_queue, clock) -> None:
        delivered: list[str] = []
        fail_once = {"a-1"}

        def handler(request: httpx.Request) -> httpx.Response:
            name = json.loads(request.content)["data"]["name"]
            if name in fail_once:
                fail_once.discard(name)
                return httpx.Response(503)
            delivered.append(name)
            return httpx.Response(200)

        queue = make_queue(handler)
        for name, tenant in (("a-1", "a"), ("b-1", "b"), ("a-2", "a"), ("b-2", "b")):
            await queue.enqueue("tenant.updated", {"name": name}, tenant_key=tenant)
            clock.advance(seconds=1)

        # a-1 fails, so a-2 waits; tenant b is unaffected.
        assert await queue.drain() == 3
        assert delivered == ["b-1", "b-2"]

        clock.advance(minutes=5)
        assert await queue.drain() == 2
        assert delivered == ["b-1", "b-2", "a-1", "a-2"]

    @pytest.mark.asyncio
    async def test_failed_event_holds_back_its_tenant_across_drains(self, make_queue, clock) -> None:
        delivered: list[str] = []
        fail_once = {"disable"}

        def handler(request: httpx.Request) -> httpx.Response:
            name = json.loads(request.content)["data"]["name"]
            if name in fail_once:
                fail_once.discard(name)
                return httpx.Response(503)
            delivered.append(name)
            return httpx.Response(200)

        queue = make_queue(handler)
        await queue.enqueue("tenant.disabled", {"name": "disable"}, tenant_key="ws-1")
        assert await queue.drain() == 1
        assert delivered == []

        # The enable is due at once but must not overtake the failed disable.
        clock.advance(seconds=15)
        await queue.enqueue("tenant.enabled", {"name": "enable"}, tenant_key="ws-1")
        await queue.enqueue("tenant.created", {"name": "other"}, tenant_key="ws-2")
        assert await queue.drain() == 1
        assert delivered == ["other"]

        clock.advance(minutes=5)
        assert await queue.drain() == 2
        assert delivered == ["other", "disable", "enable"]

    @pytest.mark.asyncio
    async def test_invalid_target_url_is_a_failed_attempt(self, make_queue) -> None:
        queue = make_queue(_ok)
        event_id = await queue.enqueue("tenant.created", {}, "http://test/hook\x01", tenant_key="ws-1")

        assert await queue.drain() == 1
        row = await queue.get_event(event_id)
        assert (row.status, row.attempts) == ("failed", 1)
        assert row.last_error.startswith("Invalid target URL")

    @pytest.mark.asyncio
    async def test_batch_limit(self, make_queue) -> None:
        queue = make_queue(_ok)
        for i in range(5):
            await queue.enqueue("tenant.created", {"i": i}, tenant_key=f"t-{i}")
        assert await queue.drain(batch_limit=2) == 2
        assert await queue.drain() == 3

    @pytest.mark.asyncio
    async def test_concurrent_drainers_never_double_send(self, make_queue) -> None:
        received: Counter[str] = Counter()

        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(0.01)
            received[request.headers["x-webhook-id"]] += 1
            return httpx.Response(200)

        first = make_queue(handler)
        second = make_queue(handler)
        event_ids = [await first.enqueue("tenant.created", {"i": i}, tenant_key=f"t-{i}") for i in range(10)]

        attempted = await asyncio.gather(first.drain(), second.drain())

        assert sum(attempted) == 10
        assert set(received) == set(event_ids)
        assert all(count == 1 for count in received.values())
        for event_id in event_ids:
            assert (await first.get_event(event_id)).status == "sent"

    @pytest.mark.asyncio
    async def test_stale_claim_counts_as_failed_attempt(self, make_queue, session_factory, clock) -> None:
        queue = make_queue(_ok, lease_seconds=300)
        event_id = await queue.enqueue("tenant.created", {}, tenant_key="ws-1")

        # A drainer claimed the event and died before reporting back.
        async with session_factory() as session:
            repo = OutboundEventRepository(session)
            row = await repo.get(event_id)
            assert await repo.claim(row.id, clock.now, "dead-worker")
            await session.commit()

        clock.advance(seconds=299)
        assert await queue.drain() == 0
        assert (await queue.get_event(event_id)).status == "sending"

        clock.advance(seconds=2)
        assert await queue.drain() == 0
        row = await queue.get_event(event_id)
        assert row.status == "failed"
        assert row.attempts == 1
        assert "lease" in row.last_error
        assert row.next_retry_at == clock.now + timedelta(seconds=120)

        clock.now = row.next_retry_at
        assert await queue.drain() == 1
        assert (await queue.get_event(event_id)).status == "sent"


# ---------------------------------------------------------------------------
# Operator surface
# ---------------------------------------------------------------------------


class TestRearm:
    @pytest.mark.asyncio
    async def test_rearm_exhausted_event(self, make_queue) -> None:
        failing = make_queue(_server_error, max_attempts=1)
        event_id = await failing.enqueue("tenant.created", {}, tenant_key="ws-1")
        assert await failing.drain() == 1
        assert await failing.drain() == 0

        assert await failing.rearm(event_id)
        row = await failing.get_event(event_id)
        assert (row.status, row.attempts) == ("pending", 0)

        healthy = make_queue(_ok)
        assert await healthy.drain() == 1
        assert (await healthy.get_event(event_id)).status == "sent"

    @pytest.mark.asyncio
    async def test_rearm_rejects_other_states(self, make_queue) -> None:
        queue = make_queue(_ok)
        event_id = await queue.enqueue("tenant.created", {})
        assert not await queue.rearm(event_id)
        assert not await queue.rearm("no-such-event")

    @pytest.mark.asyncio
    async def test_list_events_filters(self, make_queue) -> None:
        queue = make_queue(_ok)
        await queue.enqueue("tenant.created", {}, tenant_key="a")
        await queue.enqueue("tenant.created", {}, tenant_key="b")
        await queue.drain(batch_limit=1)

        assert [e.tenant_key for e in await queue.list_events(status="sent")] == ["a"]
        assert [e.tenant_key for e in await queue.list_events(status="pending")] == ["b"]
        assert [e.tenant_key for e in await queue.list_events(tenant_key="b")] == ["b"]


class TestStoreUnavailable:
    @pytest.mark.asyncio
    async def test_unreachable_store_raises_store_unavailable(self, tmp_path) -> None:
        # A directory cannot be opened as a database file.
        engine = get_local_engine(tmp_path)
        queue = OutboundDeliveryQueue(
            get_session_factory(engine),
            secret=_SECRET,
            target_url="http://test/hook",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(_ok)),
        )
        try:
            with pytest.raises(StoreUnavailableError) as exc_info:
                await queue.drain()
            assert exc_info.value.retryable
        finally:
            await engine.dispose()
