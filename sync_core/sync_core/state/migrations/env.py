"""Alembic environment for the TenantSync store.

The URL comes from ``ALEMBIC_DATABASE_URL``, then ``TENANTSYNC_DATABASE_URL``
(the service setting), then ``sqlalchemy.url`` in ``alembic.ini``.  The
service uses async drivers; migrations run on their synchronous
counterparts.
"""

from __future__ import annotations

import logging
import os
from logging.config import fileConfig

from alembic import context
from sqlalchemy import create_engine, pool
from sqlalchemy.engine import URL, make_url

from sync_core.state.tables import Base

config = context.config
if config.config_file_name is not None:
    fileConfig(config.config_file_name)

logger = logging.getLogger("alembic.env")

target_metadata = Base.metadata

_FALLBACK_URL = "sqlite+aiosqlite:///.tenantsync/state.db"

# async driver -> driver alembic can run synchronously
_SYNC_DRIVERS = {
    "postgresql+asyncpg": "postgresql+psycopg",
    "postgresql": "postgresql+psycopg",
    "sqlite+aiosqlite": "sqlite",
}


def _migration_url() -> URL:
    raw = (
        os.environ.get("ALEMBIC_DATABASE_URL")
        or os.environ.get("TENANTSYNC_DATABASE_URL")
        or config.get_main_option("sqlalchemy.url")
        or _FALLBACK_URL
    )
    url = make_url(raw)
    url = url.set(drivername=_SYNC_DRIVERS.get(url.drivername, url.drivername))
    # asyncpg spells it ``ssl``; libpq wants ``sslmode``.
    if "ssl" in url.query:
        query = dict(url.query)
        query["sslmode"] = query.pop("ssl")
        url = url.set(query=query)
    logger.info("Migrating %s", url.render_as_string(hide_password=True))
    return url


def run_migrations_offline() -> None:
    """Emit SQL for the pending revisions without connecting."""
    context.configure(
        url=_migration_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        compare_type=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    engine = create_engine(_migration_url(), poolclass=pool.NullPool)
    try:
        with engine.connect() as connection:
            context.configure(
                connection=connection,
                target_metadata=target_metadata,
                compare_type=True,
                # SQLite cannot ALTER most constraints in place.
                render_as_batch=connection.dialect.name == "sqlite",
            )
            with context.begin_transaction():
                context.run_migrations()
    finally:
        engine.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
