"""Engine and session helpers shared by both planes.

The backend is picked from the URL: ``postgresql+asyncpg`` gets a pooled
engine with server-side timeouts, ``sqlite+aiosqlite`` is delegated to
:mod:`sync_core.state.sqlite_adapter`.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.engine import make_url
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from sync_core.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

# Postgres guards so a stuck row lock surfaces as an error instead of a hung request.
_PG_SERVER_SETTINGS = {"statement_timeout": "30000", "lock_timeout": "10000"}

_factories: dict[int, tuple[AsyncEngine, async_sessionmaker[AsyncSession]]] = {}


def get_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20) -> AsyncEngine:
    """Build an engine for *database_url*.

    ``pool_size`` and ``max_overflow`` only apply to PostgreSQL.
    """
    url = make_url(database_url)
    if url.get_backend_name() == "sqlite":
        from sync_core.state.sqlite_adapter import get_local_engine

        return get_local_engine(url.database or ":memory:")

    engine = create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        connect_args={"server_settings": _PG_SERVER_SETTINGS},
    )
    logger.info("PostgreSQL engine ready: host=%s pool_size=%d overflow=%d", url.host, pool_size, max_overflow)
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return the session factory for *engine*, creating it on first use.

    Sessions do not expire attributes on commit so rows stay readable after
    the transaction that loaded them ends.
    """
    entry = _factories.get(id(engine))
    if entry is None or entry[0] is not engine:
        entry = (engine, async_sessionmaker(engine, expire_on_commit=False))
        _factories[id(engine)] = entry
    return entry[1]


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on error.

    Connection-level failures are raised as :class:`StoreUnavailableError`.
    """
    session = factory()
    try:
        yield session
        await session.commit()
    except (OperationalError, InterfaceError) as exc:
        await session.rollback()
        raise StoreUnavailableError(f"Store unavailable: {exc}") from exc
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()
