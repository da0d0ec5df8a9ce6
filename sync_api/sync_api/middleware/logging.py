"""Access log for the TenantSync service.

One record per request on the ``sync_api.access`` logger, with the request
summary attached as the ``request`` extra so :class:`JSONFormatter` emits it
as a nested object.  Webhook deliveries carry their event type and outbox
id, which lets an operator match a receiver log line to the sender's row.
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from sync_core.signing import DELIVERY_ID_HEADER, EVENT_HEADER, SIGNATURE_HEADER

logger = logging.getLogger("sync_api.access")

CORRELATION_HEADER = "X-Correlation-ID"

_REDACTED = "***"
_REDACT = frozenset({"authorization", "cookie", "x-saas-admin-key", SIGNATURE_HEADER})


def _level_for(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


def _access_record(request: Request, status_code: int, elapsed: float, correlation_id: str) -> dict[str, Any]:
    headers = request.headers
    return {
        "method": request.method,
        "path": request.url.path,
        "query": request.url.query or None,
        "status_code": status_code,
        "duration_ms": round(elapsed * 1000, 2),
        "client": request.client.host if request.client else None,
        "correlation_id": correlation_id,
        "webhook_event": headers.get(EVENT_HEADER),
        "webhook_id": headers.get(DELIVERY_ID_HEADER),
        "headers": {k: _REDACTED if k.lower() in _REDACT else v for k, v in headers.items()},
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log each request and echo its correlation id on the response.

    The id is taken from ``X-Correlation-ID`` when the caller sends one,
    otherwise a UUID-4 is generated.  It is also stored on
    ``request.state.correlation_id`` for handlers that want to log it.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        correlation_id = request.headers.get(CORRELATION_HEADER) or str(uuid.uuid4())
        request.state.correlation_id = correlation_id

        started = time.monotonic()
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            response.headers[CORRELATION_HEADER] = correlation_id
            return response
        finally:
            record = _access_record(request, status_code, time.monotonic() - started, correlation_id)
            logger.log(_level_for(status_code), "request completed", extra={"request": record})
