"""State persistence layer using PostgreSQL or SQLite."""

from sync_core.state.database import get_engine, get_session_factory, session_scope
from sync_core.state.repository import (
    CrmUserRepository,
    OutboundEventRepository,
    TenantEventRepository,
    TenantRepository,
    WorkspaceRepository,
)

__all__ = [
    "CrmUserRepository",
    "OutboundEventRepository",
    "TenantEventRepository",
    "TenantRepository",
    "WorkspaceRepository",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
