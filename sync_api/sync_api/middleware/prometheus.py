"""Prometheus metrics for HTTP traffic and webhook synchronization.

HTTP requests are recorded as RED metrics (rate, errors, duration) by
:class:`PrometheusMiddleware`.  The delivery queue and the webhook
receiver record their outcomes through the module-level counters so an
operator can alert on exhausted deliveries.

Path normalisation collapses identifiers (``/tenants/4f2a...`` ->
``/tenants/{id}``) to keep label cardinality bounded.
"""

from __future__ import annotations

import re
import time

from prometheus_client import Counter, Histogram
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

HTTP_REQUESTS_TOTAL = Counter(
    "tenantsync_http_requests_total",
    "Total HTTP requests by method, path, and status code",
    ["method", "path", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "tenantsync_http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "tenantsync_webhook_deliveries_total",
    "Outbound webhook delivery attempts by outcome",
    ["event_type", "outcome"],
)

WEBHOOK_DELIVERY_DURATION = Histogram(
    "tenantsync_webhook_delivery_duration_seconds",
    "Outbound webhook POST duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

OUTBOUND_EXHAUSTED_TOTAL = Counter(
    "tenantsync_outbound_exhausted_total",
    "Outbound events that used up every delivery attempt",
    ["event_type"],
)

WEBHOOK_RECEIVED_TOTAL = Counter(
    "tenantsync_webhook_received_total",
    "Inbound webhooks by event type and outcome",
    ["event_type", "outcome"],
)


# Identifier shapes seen in URLs: UUIDs, hex ids, integer row ids.
_ID_SEGMENT = re.compile(
    r"/(?:[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}|[0-9a-f]{12,64}|\d+)(?=/|$)"
)

_UNMETERED = frozenset({"/metrics", "/docs", "/redoc", "/openapi.json", "/favicon.ico"})


def _normalise_path(path: str) -> str:
    """Replace identifier segments with ``{id}`` to bound label cardinality."""
    return _ID_SEGMENT.sub("/{id}", path)


class PrometheusMiddleware(BaseHTTPMiddleware):
    """Count requests and time them per method and normalised path.

    A handler that raises is counted with status ``500``.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in _UNMETERED:
            return await call_next(request)

        labels = {"method": request.method, "path": _normalise_path(request.url.path)}
        status = "500"
        started = time.monotonic()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            HTTP_REQUEST_DURATION.labels(**labels).observe(time.monotonic() - started)
            HTTP_REQUESTS_TOTAL.labels(status_code=status, **labels).inc()
