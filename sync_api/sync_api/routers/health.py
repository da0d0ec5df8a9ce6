"""Liveness and readiness checks.

``/health`` lives under the versioned prefix and always answers 200 so a
load balancer keeps the process in rotation; ``/ready`` sits at the root
and answers 503 while the store is unreachable.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from sync_api import __version__
from sync_api.dependencies import SessionDep, SettingsDep

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


async def _store_reachable(session: SessionDep) -> bool:
    try:
        await session.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as exc:
        logger.warning("Store health check failed: %s", exc)
        return False
    return True


@router.get("/health")
async def health(session: SessionDep, settings: SettingsDep) -> dict[str, Any]:
    return {
        "status": "healthy",
        "version": __version__,
        "plane": settings.plane.value,
        "db": "ok" if await _store_reachable(session) else "degraded",
    }


readiness_router = APIRouter(tags=["infrastructure"])


@readiness_router.get("/ready")
async def readiness(session: SessionDep) -> JSONResponse:
    ready = await _store_reachable(session)
    return JSONResponse(
        status_code=200 if ready else 503,
        content={
            "status": "ready" if ready else "not_ready",
            "version": __version__,
            "checks": {"db": "ok" if ready else "unavailable"},
        },
    )
