"""Data-plane Command API used by the control plane to manage tenants.

Every endpoint requires the static ``x-saas-admin-key`` header.
State-changing endpoints enqueue a lifecycle webhook back to the control
plane in the same transaction as the change.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, EmailStr, Field

from sync_api.dependencies import AdminKeyDep, DeliveryQueueDep, SessionDep, TenantAdminServiceDep

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/saas", tags=["saas-admin"], dependencies=[AdminKeyDep])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class CreateTenantRequest(BaseModel):
    email: EmailStr
    display_name: str | None = Field(default=None, max_length=256)
    subdomain: str | None = Field(default=None, max_length=63)
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)
    external_id: str | None = Field(
        default=None,
        max_length=64,
        description="Control-plane tenant id, echoed back in lifecycle webhooks.",
    )


class DisableTenantRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class UpdateNotesRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=10000)


class BulkTenantRequest(BaseModel):
    tenant_ids: list[str] = Field(..., min_length=1, max_length=500)
    reason: str | None = Field(default=None, max_length=2000)


class TenantResponse(BaseModel):
    id: str
    external_id: str | None = None
    display_name: str
    subdomain: str
    status: str
    owner_user_id: str | None = None
    disabled_at: str | None = None
    disabled_reason: str | None = None
    admin_notes: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class TenantListResponse(BaseModel):
    tenants: list[TenantResponse]
    total: int


class DeleteTenantResponse(BaseModel):
    success: bool
    tenant_id: str
    subdomain: str
    already_deleted: bool


class BulkResultResponse(BaseModel):
    total: int
    succeeded: int
    failed: int
    errors: list[dict[str, str]] = Field(default_factory=list)


class StatsResponse(BaseModel):
    total_tenants: int
    active_tenants: int
    disabled_tenants: int
    pending_tenants: int
    deleted_tenants: int
    total_users: int


class OutboundEventResponse(BaseModel):
    event_id: str
    tenant_key: str | None = None
    event_type: str
    target_url: str
    status: str
    attempts: int
    max_attempts: int
    exhausted: bool
    last_error: str | None = None
    created_at: str | None = None
    sent_at: str | None = None
    next_retry_at: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _row_to_response(row: Any) -> TenantResponse:
    """Map a :class:`WorkspaceTable` row to a response model."""
    return TenantResponse(
        id=row.id,
        external_id=row.external_id,
        display_name=row.display_name,
        subdomain=row.subdomain,
        status=row.status,
        owner_user_id=row.owner_user_id,
        disabled_at=_iso(row.disabled_at),
        disabled_reason=row.disabled_reason,
        admin_notes=row.admin_notes,
        created_at=_iso(row.created_at),
        updated_at=_iso(row.updated_at),
    )


def _event_to_response(row: Any) -> OutboundEventResponse:
    return OutboundEventResponse(
        event_id=row.event_id,
        tenant_key=row.tenant_key,
        event_type=row.event_type,
        target_url=row.target_url,
        status=row.status,
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        exhausted=row.status == "failed" and row.attempts >= row.max_attempts,
        last_error=row.last_error,
        created_at=_iso(row.created_at),
        sent_at=_iso(row.sent_at),
        next_retry_at=_iso(row.next_retry_at),
        payload=row.payload or {},
    )


# ---------------------------------------------------------------------------
# Tenant commands
# ---------------------------------------------------------------------------


@router.post("/tenants", response_model=TenantResponse, status_code=201, summary="Create a tenant")
async def create_tenant(body: CreateTenantRequest, service: TenantAdminServiceDep) -> TenantResponse:
    row = await service.create_tenant(
        str(body.email),
        display_name=body.display_name,
        subdomain=body.subdomain,
        first_name=body.first_name,
        last_name=body.last_name,
        external_id=body.external_id,
    )
    return _row_to_response(row)


@router.get("/tenants", response_model=TenantListResponse, summary="List tenants")
async def list_tenants(
    service: TenantAdminServiceDep,
    include_disabled: bool = Query(default=False, alias="includeDisabled"),
    search: str | None = Query(default=None, max_length=256),
) -> TenantListResponse:
    rows = await service.list_tenants(include_disabled=include_disabled, search=search)
    return TenantListResponse(tenants=[_row_to_response(r) for r in rows], total=len(rows))


@router.post("/tenants/bulk/disable", response_model=BulkResultResponse, summary="Disable several tenants")
async def bulk_disable(body: BulkTenantRequest, service: TenantAdminServiceDep) -> BulkResultResponse:
    return BulkResultResponse(**await service.bulk_disable(body.tenant_ids, body.reason))


@router.post("/tenants/bulk/enable", response_model=BulkResultResponse, summary="Enable several tenants")
async def bulk_enable(body: BulkTenantRequest, service: TenantAdminServiceDep) -> BulkResultResponse:
    return BulkResultResponse(**await service.bulk_enable(body.tenant_ids))


@router.get("/tenants/{tenant_id}", response_model=TenantResponse, summary="Get a tenant")
async def get_tenant(tenant_id: str, service: TenantAdminServiceDep) -> TenantResponse:
    return _row_to_response(await service.get_tenant(tenant_id))


@router.post("/tenants/{tenant_id}/disable", response_model=TenantResponse, summary="Disable a tenant")
async def disable_tenant(
    tenant_id: str,
    service: TenantAdminServiceDep,
    body: DisableTenantRequest | None = None,
) -> TenantResponse:
    reason = body.reason if body is not None else None
    return _row_to_response(await service.disable_tenant(tenant_id, reason))


@router.post("/tenants/{tenant_id}/enable", response_model=TenantResponse, summary="Enable a tenant")
async def enable_tenant(tenant_id: str, service: TenantAdminServiceDep) -> TenantResponse:
    return _row_to_response(await service.enable_tenant(tenant_id))


@router.delete("/tenants/{tenant_id}", response_model=DeleteTenantResponse, summary="Delete a tenant")
async def delete_tenant(tenant_id: str, service: TenantAdminServiceDep, session: SessionDep) -> DeleteTenantResponse:
    result = await service.delete_tenant(tenant_id)
    # Storage goes only once the tombstone and its event are durable.
    await session.commit()
    if not result["already_deleted"]:
        await service.release_storage(tenant_id)
    return DeleteTenantResponse(**result)


@router.patch("/tenants/{tenant_id}/notes", response_model=TenantResponse, summary="Update admin notes")
async def update_notes(tenant_id: str, body: UpdateNotesRequest, service: TenantAdminServiceDep) -> TenantResponse:
    return _row_to_response(await service.update_notes(tenant_id, body.notes))


# ---------------------------------------------------------------------------
# Stats and health
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=StatsResponse, summary="Tenant and user counts")
async def get_stats(service: TenantAdminServiceDep) -> StatsResponse:
    return StatsResponse(**await service.get_stats())


@router.get("/health", summary="Admin API liveness")
async def admin_health() -> dict[str, str]:
    return {"status": "ok", "timestamp": datetime.now(UTC).isoformat()}


# ---------------------------------------------------------------------------
# Outbound events (operator surface)
# ---------------------------------------------------------------------------


@router.get("/outbound-events", response_model=list[OutboundEventResponse], summary="List outbound events")
async def list_outbound_events(
    queue: DeliveryQueueDep,
    status: str | None = Query(default=None, pattern="^(pending|sending|sent|failed)$"),
    exhausted: bool = Query(default=False),
    tenant_id: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[OutboundEventResponse]:
    rows = await queue.list_events(status=status, exhausted_only=exhausted, tenant_key=tenant_id, limit=limit)
    return [_event_to_response(r) for r in rows]


@router.post(
    "/outbound-events/{event_id}/rearm",
    response_model=OutboundEventResponse,
    summary="Re-arm a failed outbound event",
)
async def rearm_outbound_event(event_id: str, queue: DeliveryQueueDep) -> OutboundEventResponse:
    row = await queue.get_event(event_id)
    if row is None:
        raise HTTPException(status_code=404, detail=f"Outbound event '{event_id}' not found")
    if not await queue.rearm(event_id):
        raise HTTPException(status_code=409, detail=f"Outbound event '{event_id}' is {row.status}, not failed")
    logger.info("Outbound event re-armed via API: id=%s", event_id)
    return _event_to_response(await queue.get_event(event_id))


@router.post("/outbound-events/drain", summary="Drain the outbound queue now")
async def drain_outbound_events(
    queue: DeliveryQueueDep,
    batch_limit: int | None = Query(default=None, ge=1, le=1000),
) -> dict[str, int]:
    return {"attempted": await queue.drain(batch_limit)}


