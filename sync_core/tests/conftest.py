"""Shared fixtures for sync_core tests."""

from __future__ import annotations

import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker
from sync_core.state.sqlite_adapter import create_local_tables, get_local_engine


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with every table created."""
    engine = get_local_engine(":memory:")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session(engine):
    factory = async_sessionmaker(engine, expire_on_commit=False)
    async with factory() as session:
        yield session
