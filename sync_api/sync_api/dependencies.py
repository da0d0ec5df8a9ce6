"""FastAPI dependency injection for settings, sessions, clients and services."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

import httpx
from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from sync_api.config import APISettings, load_api_settings
from sync_api.services.collaborators import SchemaStorageProvisioner, SqlUserDirectory
from sync_api.services.crm_client import DataPlaneClient
from sync_api.services.delivery_queue import DeliveryPolicy, OutboundDeliveryQueue
from sync_api.services.tenant_admin_service import TenantAdminService
from sync_api.services.tenant_registry_service import TenantRegistryService
from sync_api.services.webhook_receiver import WebhookReceiver
from sync_core.state.database import get_engine, get_session_factory as _factory_for

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )
    _session_factory = _factory_for(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine_or_raise() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` that commits on clean exit and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Shared clients
# ---------------------------------------------------------------------------

_delivery_queue: OutboundDeliveryQueue | None = None
_data_plane_client: DataPlaneClient | None = None


def init_clients(settings: APISettings, http_client: httpx.AsyncClient | None = None) -> None:
    """Create the delivery queue and data-plane client for this process."""
    global _delivery_queue, _data_plane_client  # noqa: PLW0603
    _delivery_queue = OutboundDeliveryQueue(
        get_session_factory(),
        secret=settings.webhook_secret.get_secret_value(),
        target_url=settings.control_plane_webhook_url,
        policy=DeliveryPolicy.from_settings(settings),
        http_client=http_client,
    )
    _data_plane_client = DataPlaneClient(
        settings.data_plane_url,
        settings.admin_key.get_secret_value(),
        timeout=settings.data_plane_timeout_seconds,
        http_client=http_client,
    )


async def dispose_clients() -> None:
    global _delivery_queue, _data_plane_client  # noqa: PLW0603
    if _delivery_queue is not None:
        await _delivery_queue.close()
        _delivery_queue = None
    if _data_plane_client is not None:
        await _data_plane_client.close()
        _data_plane_client = None


def get_delivery_queue() -> OutboundDeliveryQueue:
    if _delivery_queue is None:
        raise RuntimeError("Delivery queue has not been initialised. Ensure init_clients() is called during startup.")
    return _delivery_queue


def get_data_plane_client() -> DataPlaneClient:
    if _data_plane_client is None:
        raise RuntimeError("Data plane client has not been initialised. Ensure init_clients() is called during startup.")
    return _data_plane_client


DeliveryQueueDep = Annotated[OutboundDeliveryQueue, Depends(get_delivery_queue)]
DataPlaneClientDep = Annotated[DataPlaneClient, Depends(get_data_plane_client)]

# ---------------------------------------------------------------------------
# Admin key
# ---------------------------------------------------------------------------


async def require_admin_key(
    settings: SettingsDep,
    x_saas_admin_key: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests whose ``x-saas-admin-key`` does not match the configured key.

    Missing header -> 401, wrong key -> 403, no key configured -> 503.
    """
    expected = settings.admin_key.get_secret_value()
    if not expected:
        logger.error("Admin key is not configured; rejecting admin request")
        raise HTTPException(status_code=503, detail="Admin API not configured")
    if not x_saas_admin_key:
        raise HTTPException(status_code=401, detail="Missing x-saas-admin-key header")
    if not hmac.compare_digest(x_saas_admin_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin request with invalid key")
        raise HTTPException(status_code=403, detail="Invalid admin key")


AdminKeyDep = Depends(require_admin_key)

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_tenant_admin_service(session: SessionDep, queue: DeliveryQueueDep) -> TenantAdminService:
    return TenantAdminService(
        session,
        queue=queue,
        provisioner=SchemaStorageProvisioner(get_engine_or_raise()),
        users=SqlUserDirectory(session),
    )


def get_webhook_receiver(session: SessionDep, settings: SettingsDep) -> WebhookReceiver:
    return WebhookReceiver(
        session,
        secret=settings.webhook_secret.get_secret_value(),
        tolerance_seconds=settings.signature_tolerance_seconds,
    )


def get_tenant_registry_service(session: SessionDep, client: DataPlaneClientDep) -> TenantRegistryService:
    return TenantRegistryService(session, data_plane=client)


TenantAdminServiceDep = Annotated[TenantAdminService, Depends(get_tenant_admin_service)]
WebhookReceiverDep = Annotated[WebhookReceiver, Depends(get_webhook_receiver)]
TenantRegistryServiceDep = Annotated[TenantRegistryService, Depends(get_tenant_registry_service)]
