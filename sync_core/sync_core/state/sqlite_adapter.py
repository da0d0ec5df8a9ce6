"""SQLite backend for development, tests and the single-process ``all`` plane.

The ORM tables are shared with PostgreSQL; only the engine differs.  Both
planes may write the same file concurrently (the delivery drainer and
request handlers), so connections run in WAL mode with a generous busy
timeout instead of failing fast on ``database is locked``.  There are no
schemas, so workspace storage provisioning is skipped on this backend.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

MEMORY = ":memory:"
DEFAULT_PATH = Path(".tenantsync") / "state.db"

_BUSY_TIMEOUT_SECONDS = 30

_PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA foreign_keys=ON",
    "PRAGMA synchronous=NORMAL",
)


def _apply_pragmas(dbapi_conn: Any, _record: Any) -> None:
    cursor = dbapi_conn.cursor()
    try:
        for pragma in _PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


def get_local_engine(db_path: Path | str = DEFAULT_PATH) -> AsyncEngine:
    """Return an aiosqlite engine for *db_path*, creating parent directories.

    ``":memory:"`` gives a private database held by a single shared
    connection, so every session sees the same tables.
    """
    options: dict[str, Any] = {
        "connect_args": {"check_same_thread": False, "timeout": _BUSY_TIMEOUT_SECONDS},
    }
    if str(db_path) == MEMORY:
        url = f"sqlite+aiosqlite:///{MEMORY}"
        options["poolclass"] = StaticPool
    else:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite+aiosqlite:///{path}"

    engine = create_async_engine(url, **options)
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    logger.info("SQLite engine ready: %s", url)
    return engine


async def create_local_tables(engine: AsyncEngine) -> None:
    """Create any missing tables.  Existing tables are left untouched."""
    from sync_core.state.tables import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.debug("SQLite schema verified for %s", engine.url)
