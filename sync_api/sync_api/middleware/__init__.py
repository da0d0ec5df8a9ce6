"""Middleware components for the TenantSync service."""

from __future__ import annotations

from sync_api.middleware.json_formatter import JSONFormatter
from sync_api.middleware.logging import RequestLoggingMiddleware
from sync_api.middleware.prometheus import PrometheusMiddleware

__all__ = [
    "JSONFormatter",
    "PrometheusMiddleware",
    "RequestLoggingMiddleware",
]
