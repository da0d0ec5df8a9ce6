"""Service configuration loaded from environment variables."""

from __future__ import annotations

from enum import Enum
from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEV_ADMIN_KEY = "tenantsync-dev-admin-key"
_DEV_WEBHOOK_SECRET = "tenantsync-dev-webhook-secret"


class PlatformEnv(str, Enum):
    """Deployment environment label."""

    DEV = "dev"
    STAGING = "staging"
    PRODUCTION = "production"


class Plane(str, Enum):
    """Which side of the synchronization this process serves.

    ``data`` exposes the Command API and runs the delivery scheduler,
    ``control`` exposes the tenant registry and the webhook receiver,
    ``all`` runs both in one process for local development.
    """

    DATA = "data"
    CONTROL = "control"
    ALL = "all"

    @property
    def serves_data(self) -> bool:
        return self in (Plane.DATA, Plane.ALL)

    @property
    def serves_control(self) -> bool:
        return self in (Plane.CONTROL, Plane.ALL)


class APISettings(BaseSettings):
    """TenantSync service settings.

    All values can be overridden via environment variables prefixed with
    ``TENANTSYNC_`` (e.g. ``TENANTSYNC_PLANE=data``) or through a ``.env``
    file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="TENANTSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    plane: Plane = Plane.ALL
    platform_env: PlatformEnv = PlatformEnv.DEV

    database_url: str = "sqlite+aiosqlite:///.tenantsync/state.db"
    db_pool_size: int = 10
    db_max_overflow: int = 20

    # Static key expected in the ``x-saas-admin-key`` header.
    admin_key: SecretStr = SecretStr(_DEV_ADMIN_KEY)

    # Shared HMAC secret for webhook envelopes (both directions).
    webhook_secret: SecretStr = SecretStr(_DEV_WEBHOOK_SECRET)
    signature_tolerance_seconds: int = 300

    # Where the data plane delivers lifecycle confirmations.
    control_plane_webhook_url: str = "http://localhost:8000/api/v1/webhooks/tenant"

    # Where the control plane forwards tenant commands.
    data_plane_url: str = "http://localhost:8000/api/v1/saas"
    data_plane_timeout_seconds: float = 10.0

    # Outbound delivery queue.
    delivery_enabled: bool = True
    delivery_interval_seconds: float = 15.0
    delivery_batch_limit: int = 100
    delivery_max_attempts: int = 5
    delivery_base_delay_seconds: float = 60.0
    delivery_timeout_seconds: float = 10.0
    delivery_lease_seconds: float = 300.0

    # Create tables on startup (always on for SQLite).
    auto_create_tables: bool = False

    cors_origins: list[str] = ["http://localhost:3000"]

    # Structured JSON logging for log shippers.
    structured_logging: bool = False
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _validate_secrets_outside_dev(self) -> Self:
        """Refuse to start staging/production with the development secrets."""
        if self.platform_env == PlatformEnv.DEV:
            return self
        if self.admin_key.get_secret_value() in ("", _DEV_ADMIN_KEY):
            raise ValueError("TENANTSYNC_ADMIN_KEY must be set outside the dev environment")
        if self.webhook_secret.get_secret_value() in ("", _DEV_WEBHOOK_SECRET):
            raise ValueError("TENANTSYNC_WEBHOOK_SECRET must be set outside the dev environment")
        return self

    @model_validator(mode="after")
    def _validate_delivery_policy(self) -> Self:
        if self.delivery_max_attempts < 1:
            raise ValueError("delivery_max_attempts must be at least 1")
        if self.delivery_base_delay_seconds <= 0:
            raise ValueError("delivery_base_delay_seconds must be positive")
        return self


def load_api_settings() -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings()
