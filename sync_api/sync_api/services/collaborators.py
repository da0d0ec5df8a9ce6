"""Collaborators the Command API depends on but does not own.

* :class:`StorageProvisioner` creates and drops a workspace's isolated
  storage.  The shipped implementation uses one PostgreSQL schema per
  workspace and does nothing on SQLite.
* :class:`UserDirectory` resolves the owning user of a workspace by email.
"""

from __future__ import annotations

import logging
import re
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from sync_core.state.repository import CrmUserRepository

logger = logging.getLogger(__name__)

_WORKSPACE_ID_RE = re.compile(r"^[a-zA-Z0-9_]{1,64}$")


class StorageProvisioner(Protocol):
    async def create(self, workspace_id: str) -> None: ...

    async def drop(self, workspace_id: str) -> None: ...


class UserDirectory(Protocol):
    async def get_or_create(
        self,
        email: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> str: ...

    async def count(self) -> int: ...


def schema_name_for(workspace_id: str) -> str:
    """Return the PostgreSQL schema name that holds a workspace's data."""
    if not _WORKSPACE_ID_RE.match(workspace_id):
        raise ValueError(f"Invalid workspace id for schema name: {workspace_id!r}")
    return f"workspace_{workspace_id}"


class SchemaStorageProvisioner:
    """One PostgreSQL schema per workspace.

    On SQLite there are no schemas, so both operations only log.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @property
    def enabled(self) -> bool:
        return self._engine.dialect.name == "postgresql"

    async def create(self, workspace_id: str) -> None:
        schema = schema_name_for(workspace_id)
        if not self.enabled:
            logger.debug("Skipping schema creation on %s: %s", self._engine.dialect.name, schema)
            return
        async with self._engine.begin() as conn:
            await conn.execute(text(f'CREATE SCHEMA IF NOT EXISTS "{schema}"'))
        logger.info("Created workspace schema %s", schema)

    async def drop(self, workspace_id: str) -> None:
        schema = schema_name_for(workspace_id)
        if not self.enabled:
            logger.debug("Skipping schema drop on %s: %s", self._engine.dialect.name, schema)
            return
        async with self._engine.begin() as conn:
            await conn.execute(text(f'DROP SCHEMA IF EXISTS "{schema}" CASCADE'))
        logger.info("Dropped workspace schema %s", schema)


class SqlUserDirectory:
    """:class:`UserDirectory` backed by the ``crm_users`` table.

    Shares the caller's session so the owner and the workspace are
    committed together.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = CrmUserRepository(session)

    async def get_or_create(
        self,
        email: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> str:
        existing = await self._repo.get_by_email(email)
        if existing is not None:
            return existing.id
        row = await self._repo.create(email, first_name=first_name, last_name=last_name)
        logger.info("Created CRM user for workspace owner: %s", row.id)
        return row.id

    async def count(self) -> int:
        return await self._repo.count()
