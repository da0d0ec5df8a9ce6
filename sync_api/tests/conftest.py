"""Shared fixtures for TenantSync API tests.

Provides explicit settings, a file-backed SQLite store, a controllable
clock, mock HTTP transports and an ASGI test client wired to the real
application factory.
"""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sync_api import dependencies
from sync_api.config import APISettings
from sync_api.main import create_app
from sync_api.services.delivery_queue import DeliveryPolicy, OutboundDeliveryQueue
from sync_core.state.database import get_session_factory
from sync_core.state.sqlite_adapter import create_local_tables, get_local_engine

ADMIN_KEY = "test-admin-key"
WEBHOOK_SECRET = "test-webhook-secret"
ADMIN_HEADERS = {"x-saas-admin-key": ADMIN_KEY}
WEBHOOK_URL = "http://test/api/v1/webhooks/tenant"

T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable returning a settable aware UTC datetime."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def epoch(self) -> int:
        return int(self.now.timestamp())


def make_settings(tmp_path: Path, **overrides: Any) -> APISettings:
    values: dict[str, Any] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        "admin_key": ADMIN_KEY,
        "webhook_secret": WEBHOOK_SECRET,
        "control_plane_webhook_url": WEBHOOK_URL,
        "data_plane_url": "http://test/api/v1/saas",
        "delivery_enabled": False,
        "delivery_max_attempts": 3,
        "delivery_base_delay_seconds": 60,
    }
    values.update(overrides)
    return APISettings(**values)


def mock_client(handler: Callable[[httpx.Request], Any]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def engine(tmp_path: Path):
    """File-backed SQLite engine so several sessions can run concurrently."""
    engine = get_local_engine(tmp_path / "store.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return get_session_factory(engine)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_queue(session_factory, clock):
    """Build an :class:`OutboundDeliveryQueue` whose HTTP calls go to *handler*."""
    created: list[OutboundDeliveryQueue] = []

    def _make(handler: Callable[[httpx.Request], Any], **policy: Any) -> OutboundDeliveryQueue:
        options: dict[str, Any] = {"max_attempts": 3, "base_delay_seconds": 60.0, "lease_seconds": 300.0}
        options.update(policy)
        queue = OutboundDeliveryQueue(
            session_factory,
            secret=WEBHOOK_SECRET,
            target_url=WEBHOOK_URL,
            policy=DeliveryPolicy(**options),
            http_client=mock_client(handler),
            clock=clock,
            worker_id=f"test-worker-{len(created)}",
        )
        created.append(queue)
        return queue

    return _make


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> APISettings:
    return make_settings(tmp_path)


@asynccontextmanager
async def _running_app(settings: APISettings) -> AsyncIterator[tuple[FastAPI, AsyncClient]]:
    """Serve *settings* in-process with outbound calls looped back into the app."""
    app = create_app(settings)
    engine = dependencies.init_engine(settings)
    await create_local_tables(engine)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        dependencies.init_clients(settings, http_client=ac)
        try:
            yield app, ac
        finally:
            await dependencies.dispose_clients()
            await dependencies.dispose_engine()


@pytest_asyncio.fixture
async def client(settings: APISettings):
    """ASGI client for an app serving both planes.

    Outbound calls made by the app (webhook deliveries and data-plane
    commands) are routed back into the same app through this client.
    """
    async with _running_app(settings) as (_, ac):
        yield ac


@pytest.fixture
def serve(tmp_path: Path):
    """Start an app for the test settings plus *overrides*; yields ``(app, client)``."""

    def _serve(**overrides: Any):
        return _running_app(make_settings(tmp_path, **overrides))

    return _serve
