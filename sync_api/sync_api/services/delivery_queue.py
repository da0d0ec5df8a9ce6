"""Durable at-least-once delivery of lifecycle events to the control plane.

Events are written to ``outbound_events`` in the same transaction as the
workspace change that produced them (transactional outbox).  ``drain``
later picks up due events, signs each one and POSTs it to the control
plane's webhook receiver.

Delivery rules:

* A row is owned by whoever wins the compare-and-set from
  ``pending``/``failed`` to ``sending``, so any number of drainers in
  separate processes can share the table without double-sending.
* A 2xx response marks the event ``sent``.  Anything else (non-2xx,
  timeout, connection error) counts as a failed attempt and schedules the
  next one at ``now + base_delay * 2 ** attempts`` (``attempts`` already
  counting this failure).
* Once ``attempts`` reaches ``max_attempts`` the event stays ``failed``
  and is never selected again; it is logged at ERROR and counted in
  ``tenantsync_outbound_exhausted_total`` until an operator re-arms it.
* Events of one tenant go out in creation order.  An event is not
  selected or claimed while an older event of the same tenant is still
  waiting for delivery, so a failed event holds back its successors
  across drains until it is sent or exhausted.  Other tenants are
  unaffected.
* ``sending`` rows whose claim is older than the lease belong to a
  drainer that died mid-POST; they are counted as a failed attempt.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sync_api.middleware.prometheus import (
    OUTBOUND_EXHAUSTED_TOTAL,
    WEBHOOK_DELIVERIES_TOTAL,
    WEBHOOK_DELIVERY_DURATION,
)
from sync_core.errors import DeliveryFailureError, StoreUnavailableError
from sync_core.signing import DELIVERY_ID_HEADER, EVENT_HEADER, SIGNATURE_HEADER, sign
from sync_core.state.database import session_scope
from sync_core.state.repository import OutboundEventRepository
from sync_core.state.tables import OutboundEventTable

logger = logging.getLogger(__name__)

_USER_AGENT = "tenantsync-webhooks/1.0"


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class DeliveryPolicy:
    """Retry and batching parameters for the delivery queue."""

    max_attempts: int = 5
    base_delay_seconds: float = 60.0
    timeout_seconds: float = 10.0
    batch_limit: int = 100
    lease_seconds: float = 300.0

    @classmethod
    def from_settings(cls, settings: Any) -> DeliveryPolicy:
        return cls(
            max_attempts=settings.delivery_max_attempts,
            base_delay_seconds=settings.delivery_base_delay_seconds,
            timeout_seconds=settings.delivery_timeout_seconds,
            batch_limit=settings.delivery_batch_limit,
            lease_seconds=settings.delivery_lease_seconds,
        )

    def backoff(self, attempts: int) -> timedelta:
        """Delay before the next try after *attempts* failed attempts (>= 1)."""
        return timedelta(seconds=self.base_delay_seconds * 2**attempts)


class OutboundDeliveryQueue:
    """Enqueue, drain and re-arm outbound lifecycle events.

    Parameters
    ----------
    session_factory:
        Factory for the sessions used by ``drain`` and standalone ``enqueue``.
    secret:
        Shared HMAC secret used to sign every envelope.
    target_url:
        Default webhook endpoint when ``enqueue`` is not given one.
    policy:
        Retry and batching parameters.
    http_client:
        Optional ``httpx.AsyncClient`` (tests inject a mock transport).
    clock:
        Returns the current aware UTC datetime; injectable for tests.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        secret: str | bytes,
        target_url: str,
        policy: DeliveryPolicy | None = None,
        http_client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] | None = None,
        worker_id: str | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._secret = secret
        self._target_url = target_url
        self._policy = policy or DeliveryPolicy()
        self._client = http_client or httpx.AsyncClient(timeout=self._policy.timeout_seconds)
        self._owns_client = http_client is None
        self._clock = clock or _utcnow
        self._worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self._drain_lock = asyncio.Lock()

    @property
    def policy(self) -> DeliveryPolicy:
        return self._policy

    @property
    def worker_id(self) -> str:
        return self._worker_id

    async def close(self) -> None:
        """Close the HTTP client if we own it."""
        if self._owns_client:
            await self._client.aclose()

    def _session(self) -> AbstractAsyncContextManager[AsyncSession]:
        return session_scope(self._session_factory)

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        event_type: str,
        payload: dict[str, Any],
        target_url: str | None = None,
        *,
        tenant_key: str | None = None,
        session: AsyncSession | None = None,
    ) -> str:
        """Persist a new ``pending`` event and return its ``event_id``.

        When *session* is given the insert joins the caller's transaction
        and becomes visible only when the caller commits.
        """
        if session is not None:
            try:
                row = await self._insert(session, event_type, payload, target_url, tenant_key)
            except (OperationalError, InterfaceError) as exc:
                raise StoreUnavailableError(f"Outbound event store unavailable: {exc}") from exc
            return row.event_id

        async with self._session() as own_session:
            row = await self._insert(own_session, event_type, payload, target_url, tenant_key)
        return row.event_id

    async def _insert(
        self,
        session: AsyncSession,
        event_type: str,
        payload: dict[str, Any],
        target_url: str | None,
        tenant_key: str | None,
    ) -> OutboundEventTable:
        row = await OutboundEventRepository(session).enqueue(
            event_type=event_type,
            payload=payload,
            target_url=target_url or self._target_url,
            max_attempts=self._policy.max_attempts,
            now=self._clock(),
            tenant_key=tenant_key,
        )
        logger.info(
            "Outbound event enqueued: id=%s type=%s tenant=%s",
            row.event_id,
            event_type,
            tenant_key,
        )
        return row

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    async def drain(self, batch_limit: int | None = None) -> int:
        """Attempt delivery of up to *batch_limit* due events.

        Returns the number of delivery attempts made (successful or not).
        Only one drain runs at a time per queue instance.
        """
        limit = batch_limit or self._policy.batch_limit
        async with self._drain_lock:
            await self._release_stale_claims()

            async with self._session() as session:
                events = await OutboundEventRepository(session).list_due(self._clock(), limit)
            if not events:
                return 0

            blocked: set[str] = set()
            attempted = 0
            for event in events:
                key = event.tenant_key or event.event_id
                if key in blocked:
                    continue

                async with self._session() as session:
                    claimed = await OutboundEventRepository(session).claim(event.id, self._clock(), self._worker_id)
                if not claimed:
                    # Another drainer owns it; keep this tenant's order intact.
                    blocked.add(key)
                    continue

                attempted += 1
                if not await self._deliver(event):
                    blocked.add(key)

            logger.info(
                "Drain finished: worker=%s selected=%d attempted=%d blocked_tenants=%d",
                self._worker_id,
                len(events),
                attempted,
                len(blocked),
            )
            return attempted

    async def _release_stale_claims(self) -> None:
        now = self._clock()
        cutoff = now - timedelta(seconds=self._policy.lease_seconds)
        async with self._session() as session:
            repo = OutboundEventRepository(session)
            for event in await repo.list_stale_claims(cutoff):
                logger.warning(
                    "Releasing stale claim: id=%s claimed_by=%s claimed_at=%s",
                    event.event_id,
                    event.claimed_by,
                    event.claimed_at,
                )
                await self._record_failure(repo, event, "delivery interrupted: claim lease expired", now)

    def _build_body(self, event: OutboundEventTable, timestamp: int) -> bytes:
        envelope = {"event": event.event_type, "timestamp": timestamp, "data": event.payload}
        return json.dumps(envelope, separators=(",", ":"), sort_keys=True, default=str).encode("utf-8")

    async def _post(self, event: OutboundEventTable) -> int:
        """Sign and POST one event; return the 2xx status or raise.

        Raises
        ------
        DeliveryFailureError
            On a non-2xx response, a timeout, a connection error or an invalid URL.
        """
        timestamp = int(self._clock().timestamp())
        body = self._build_body(event, timestamp)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": _USER_AGENT,
            SIGNATURE_HEADER: sign(body, self._secret, timestamp),
            EVENT_HEADER: event.event_type,
            DELIVERY_ID_HEADER: event.event_id,
        }

        start = time.monotonic()
        try:
            response = await self._client.post(
                event.target_url,
                content=body,
                headers=headers,
                timeout=self._policy.timeout_seconds,
            )
        except httpx.TimeoutException:
            raise DeliveryFailureError(f"Timeout after {self._policy.timeout_seconds}s") from None
        except httpx.RequestError as exc:
            raise DeliveryFailureError(f"Request error: {type(exc).__name__}: {exc}") from None
        except httpx.InvalidURL as exc:
            raise DeliveryFailureError(f"Invalid target URL: {exc}") from None
        finally:
            WEBHOOK_DELIVERY_DURATION.observe(time.monotonic() - start)

        if not 200 <= response.status_code < 300:
            raise DeliveryFailureError(f"HTTP {response.status_code}: {response.text[:200]}")
        return response.status_code

    async def _deliver(self, event: OutboundEventTable) -> bool:
        """Deliver a claimed event and record the outcome; ``True`` on success."""
        try:
            status_code = await self._post(event)
        except DeliveryFailureError as exc:
            WEBHOOK_DELIVERIES_TOTAL.labels(event_type=event.event_type, outcome="failed").inc()
            async with self._session() as session:
                await self._record_failure(OutboundEventRepository(session), event, str(exc), self._clock())
            return False

        async with self._session() as session:
            await OutboundEventRepository(session).mark_sent(event.id, self._clock())
        WEBHOOK_DELIVERIES_TOTAL.labels(event_type=event.event_type, outcome="sent").inc()
        logger.info(
            "Webhook delivered: id=%s url=%s status=%d attempt=%d event=%s",
            event.event_id,
            event.target_url,
            status_code,
            event.attempts + 1,
            event.event_type,
        )
        return True

    async def _record_failure(
        self,
        repo: OutboundEventRepository,
        event: OutboundEventTable,
        error: str,
        now: datetime,
    ) -> None:
        attempts = event.attempts + 1
        next_retry_at = now + self._policy.backoff(attempts)
        recorded = await repo.mark_failed(
            event.id,
            observed_attempts=event.attempts,
            error=error,
            next_retry_at=next_retry_at,
        )
        if not recorded:
            logger.warning("Outbound event %s changed while delivering; failure not recorded", event.event_id)
            return

        delivery = {
            "event_id": event.event_id,
            "event_type": event.event_type,
            "tenant_key": event.tenant_key,
            "attempts": attempts,
            "max_attempts": event.max_attempts,
            "error": error,
        }
        if attempts >= event.max_attempts:
            OUTBOUND_EXHAUSTED_TOTAL.labels(event_type=event.event_type).inc()
            logger.error(
                "Outbound event exhausted after %d attempts: id=%s type=%s error=%s",
                attempts,
                event.event_id,
                event.event_type,
                error,
                extra={"delivery": delivery},
            )
        else:
            logger.warning(
                "Webhook delivery failed: id=%s attempt=%d/%d next_retry_at=%s error=%s",
                event.event_id,
                attempts,
                event.max_attempts,
                next_retry_at.isoformat(),
                error,
                extra={"delivery": delivery},
            )

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    async def rearm(self, event_id: str) -> bool:
        """Reset a failed event to ``pending`` with zero attempts."""
        async with self._session() as session:
            rearmed = await OutboundEventRepository(session).rearm(event_id, self._clock())
        if rearmed:
            logger.info("Outbound event re-armed: id=%s", event_id)
        return rearmed

    async def list_events(
        self,
        *,
        status: str | None = None,
        exhausted_only: bool = False,
        tenant_key: str | None = None,
        limit: int = 100,
    ) -> list[OutboundEventTable]:
        async with self._session() as session:
            return await OutboundEventRepository(session).list_events(
                status=status,
                exhausted_only=exhausted_only,
                tenant_key=tenant_key,
                limit=limit,
            )

    async def get_event(self, event_id: str) -> OutboundEventTable | None:
        async with self._session() as session:
            return await OutboundEventRepository(session).get(event_id)
