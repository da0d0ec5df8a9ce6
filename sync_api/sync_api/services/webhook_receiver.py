"""Control-plane receiver for signed lifecycle confirmations.

Processing order for every request:

1. verify the ``x-webhook-signature`` header against the raw body;
2. parse the JSON envelope ``{"event", "timestamp", "data"}``;
3. route on :class:`LifecycleEvent`; unknown event types are acknowledged
   and ignored so that new data-plane events never cause retries;
4. resolve the tenant by ``tenant_id``, then ``crm_workspace_id``, then
   ``subdomain``;
5. apply the transition idempotently and record it in ``tenant_events``.

A duplicate delivery is a no-op and still acknowledged; a repeated
``tenant.disabled`` only refreshes the stored reason.  Once the signature
and envelope check out, every request is acknowledged with 200.  A tenant
that cannot be found or a transition its status does not allow is logged
at ERROR, counted and returned as a ``rejected`` ack.  Redelivering the
same event could not change that outcome.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from sync_api.middleware.prometheus import WEBHOOK_RECEIVED_TOTAL
from sync_core.errors import (
    IllegalTransitionError,
    MalformedEnvelopeError,
    TenantNotFoundError,
    TenantSyncError,
)
from sync_core.events import LifecycleEvent
from sync_core.lifecycle import TenantStatus, Transition
from sync_core.signing import DEFAULT_TOLERANCE_SECONDS, verify
from sync_core.state.repository import TenantEventRepository, TenantRepository
from sync_core.state.tables import TenantTable
from sync_core.state.transitions import transition_record

logger = logging.getLogger(__name__)

_TRIGGERED_BY = "crm-webhook"

# tenant_events.event_type recorded for each applied transition.
_AUDIT_EVENT: dict[Transition, str] = {
    Transition.CONFIRM: "activated",
    Transition.DISABLE: "disabled",
    Transition.ENABLE: "enabled",
    Transition.DELETE: "deleted",
}


@dataclass(frozen=True)
class WebhookAck:
    """Acknowledgement returned for every verified, parsed webhook."""

    event: str
    outcome: str  # applied | noop | ignored | rejected
    tenant_id: str | None = None
    status: str | None = None
    error: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": self.error is None,
            "event": self.event,
            "outcome": self.outcome,
            "tenant_id": self.tenant_id,
            "status": self.status,
        }
        if self.error is not None:
            body["error"] = self.error
            body["detail"] = self.detail
        return body


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def parse_envelope(raw_body: bytes) -> tuple[str | None, dict[str, Any]]:
    """Return ``(event_type, data)`` from a webhook body.

    ``payload`` is accepted as an alias of ``data``.

    Raises
    ------
    MalformedEnvelopeError
        If the body is not a JSON object or ``data`` is not an object.
    """
    try:
        envelope = json.loads(raw_body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise MalformedEnvelopeError("Webhook body is not valid JSON") from None
    if not isinstance(envelope, dict):
        raise MalformedEnvelopeError("Webhook body must be a JSON object")

    data = envelope.get("data", envelope.get("payload", {}))
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedEnvelopeError("Webhook 'data' must be a JSON object")

    event_type = envelope.get("event")
    if event_type is not None and not isinstance(event_type, str):
        raise MalformedEnvelopeError("Webhook 'event' must be a string")
    return event_type, data


class WebhookReceiver:
    """Verify and apply inbound lifecycle webhooks to control-plane tenants.

    Parameters
    ----------
    session:
        The request's session; the service never commits it.
    secret:
        Shared HMAC secret.
    tolerance_seconds:
        Maximum accepted clock skew for the signed timestamp.
    clock:
        Returns the current epoch second; injectable for tests.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        secret: str | bytes,
        tolerance_seconds: int = DEFAULT_TOLERANCE_SECONDS,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._secret = secret
        self._tolerance = tolerance_seconds
        self._clock = clock or (lambda: int(time.time()))
        self._tenants = TenantRepository(session)
        self._events = TenantEventRepository(session)

    async def handle(
        self,
        raw_body: bytes,
        signature_header: str | None,
        event_header: str | None = None,
    ) -> WebhookAck:
        """Process one webhook request.

        Raises
        ------
        MalformedSignatureError, StaleSignatureError, InvalidSignatureError
            If signature verification fails.
        MalformedEnvelopeError
            If the body cannot be parsed.
        """
        label = event_header or "unknown"
        try:
            verify(raw_body, signature_header, self._secret, self._tolerance, now=self._clock())
            event_type, data = parse_envelope(raw_body)
            event_type = event_type or event_header
            label = event_type or "unknown"
            if event_header and event_type != event_header:
                logger.warning("Webhook event header %s does not match body event %s", event_header, event_type)

            ack = await self._dispatch(event_type, data)
        except TenantSyncError as exc:
            WEBHOOK_RECEIVED_TOTAL.labels(event_type=label, outcome=exc.kind).inc()
            logger.warning("Webhook rejected: event=%s error=%s detail=%s", label, exc.kind, exc.detail)
            raise

        WEBHOOK_RECEIVED_TOTAL.labels(event_type=label, outcome=ack.error or ack.outcome).inc()
        return ack

    async def _dispatch(self, event_type: str | None, data: dict[str, Any]) -> WebhookAck:
        event = LifecycleEvent.parse(event_type)
        if event is None:
            logger.info("Ignoring unknown webhook event type: %s", event_type)
            return WebhookAck(event=event_type or "", outcome="ignored")

        try:
            return await self._apply(event, data)
        except (TenantNotFoundError, IllegalTransitionError) as exc:
            logger.error(
                "Webhook rejected: event=%s error=%s detail=%s data=%s",
                event.value,
                exc.kind,
                exc.detail,
                data,
            )
            return WebhookAck(
                event=event.value,
                outcome="rejected",
                tenant_id=data.get("tenant_id"),
                error=exc.kind,
                detail=exc.detail,
            )

    async def _apply(self, event: LifecycleEvent, data: dict[str, Any]) -> WebhookAck:
        tenant = await self._tenants.resolve(
            tenant_id=data.get("tenant_id"),
            crm_workspace_id=data.get("crm_workspace_id"),
            subdomain=data.get("subdomain"),
        )
        if tenant is None:
            reference = data.get("tenant_id") or data.get("crm_workspace_id") or data.get("subdomain") or "<none>"
            raise TenantNotFoundError(str(reference))

        transition = event.transition
        tenant, result = await transition_record(
            self._tenants,
            tenant.id,
            transition,
            self._values_for(transition, tenant, data),
        )
        if transition == Transition.CONFIRM:
            tenant = await self._link_workspace(tenant, data.get("crm_workspace_id"))

        if result.applied:
            await self._events.append(
                tenant.id,
                _AUDIT_EVENT[transition],
                {"webhook_event": event.value, "previous_status": result.previous.value, **data},
                triggered_by=_TRIGGERED_BY,
            )
            logger.info(
                "Webhook applied: event=%s tenant=%s %s -> %s",
                event.value,
                tenant.id,
                result.previous.value,
                result.current.value,
            )
        else:
            if transition == Transition.DISABLE:
                tenant = await self._refresh_disabled_reason(tenant, data)
            logger.info("Webhook no-op: event=%s tenant=%s status=%s", event.value, tenant.id, tenant.status)

        return WebhookAck(
            event=event.value,
            outcome="applied" if result.applied else "noop",
            tenant_id=tenant.id,
            status=tenant.status,
        )

    def _values_for(self, transition: Transition, tenant: TenantTable, data: dict[str, Any]) -> dict[str, Any]:
        if transition == Transition.CONFIRM:
            workspace_id = data.get("crm_workspace_id")
            return {"crm_workspace_id": workspace_id} if workspace_id and tenant.crm_workspace_id is None else {}
        if transition == Transition.DISABLE:
            return {
                "disabled_at": _parse_timestamp(data.get("disabled_at")) or datetime.now(UTC),
                "disabled_reason": data.get("disabled_reason") or data.get("reason"),
            }
        return {"disabled_at": None, "disabled_reason": None}

    async def _link_workspace(self, tenant: TenantTable, workspace_id: Any) -> TenantTable:
        """Record the data-plane workspace id if the tenant is not linked yet."""
        if not workspace_id or tenant.crm_workspace_id == workspace_id:
            return tenant
        if tenant.crm_workspace_id is not None:
            logger.warning(
                "Tenant %s already linked to workspace %s; ignoring %s",
                tenant.id,
                tenant.crm_workspace_id,
                workspace_id,
            )
            return tenant
        await self._tenants.update_status(tenant.id, tenant.status, {"crm_workspace_id": workspace_id})
        return await self._tenants.get(tenant.id)

    async def _refresh_disabled_reason(self, tenant: TenantTable, data: dict[str, Any]) -> TenantTable:
        """Store a new reason for a tenant that is already disabled."""
        reason = data.get("disabled_reason") or data.get("reason")
        if tenant.disabled_reason == reason:
            return tenant
        if not await self._tenants.update_status(tenant.id, TenantStatus.DISABLED.value, {"disabled_reason": reason}):
            return tenant
        logger.info("Disabled reason updated: tenant=%s reason=%s", tenant.id, reason)
        return await self._tenants.get(tenant.id)
