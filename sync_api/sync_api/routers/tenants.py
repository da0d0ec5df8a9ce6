"""Control-plane tenant registry endpoints.

Commands are checked against the local status, forwarded to the data
plane and answered immediately with ``202``; the tenant's status changes
once the data plane's confirmation webhook arrives.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from sync_api.dependencies import AdminKeyDep, TenantRegistryServiceDep
from sync_api.services.tenant_registry_service import ForwardResult
from sync_core.lifecycle import TenantStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tenants", tags=["tenants"], dependencies=[AdminKeyDep])

_STATUS_PATTERN = "^(" + "|".join(s.value for s in TenantStatus) + ")$"


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------


class RegisterTenantRequest(BaseModel):
    email: EmailStr
    display_name: str | None = Field(default=None, max_length=256)
    subdomain: str | None = Field(default=None, max_length=63)
    first_name: str | None = Field(default=None, max_length=128)
    last_name: str | None = Field(default=None, max_length=128)
    metadata: dict[str, Any] | None = None


class DisableRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=2000)


class NotesRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=10000)


class RegistryTenant(BaseModel):
    id: str
    display_name: str
    subdomain: str
    owner_email: str
    crm_workspace_id: str | None = None
    status: str
    disabled_at: str | None = None
    disabled_reason: str | None = None
    admin_notes: str | None = None
    metadata: dict[str, Any] | None = None
    created_at: str | None = None
    updated_at: str | None = None


class CommandResponse(BaseModel):
    tenant: RegistryTenant
    forwarded: bool
    error: str | None = None
    data_plane: dict[str, Any] | None = None


class TenantEventResponse(BaseModel):
    id: int
    tenant_id: str
    event_type: str
    event_data: dict[str, Any]
    triggered_by: str | None = None
    created_at: str | None = None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _tenant(row: Any) -> RegistryTenant:
    return RegistryTenant(
        id=row.id,
        display_name=row.display_name,
        subdomain=row.subdomain,
        owner_email=row.owner_email,
        crm_workspace_id=row.crm_workspace_id,
        status=row.status,
        disabled_at=_iso(row.disabled_at),
        disabled_reason=row.disabled_reason,
        admin_notes=row.admin_notes,
        metadata=row.metadata_json,
        created_at=_iso(row.created_at),
        updated_at=_iso(row.updated_at),
    )


def _command(result: ForwardResult) -> CommandResponse:
    return CommandResponse(
        tenant=_tenant(result.tenant),
        forwarded=result.forwarded,
        error=result.error,
        data_plane=result.data_plane,
    )


def _accepted(result: ForwardResult, status_code: int = 202) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=_command(result).model_dump())


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@router.post("", status_code=201, response_model=CommandResponse, summary="Register a tenant")
async def register_tenant(body: RegisterTenantRequest, service: TenantRegistryServiceDep) -> JSONResponse:
    """Register a ``pending`` tenant and forward the create command.

    Returns 201 when the data plane accepted the command and 202 when the
    tenant was stored but forwarding failed; ``POST /{id}/provision``
    retries it.
    """
    result = await service.create_tenant(
        str(body.email),
        display_name=body.display_name,
        subdomain=body.subdomain,
        first_name=body.first_name,
        last_name=body.last_name,
        metadata=body.metadata,
    )
    return _accepted(result, 201 if result.forwarded else 202)


@router.get("", response_model=list[RegistryTenant], summary="List tenants")
async def list_tenants(
    service: TenantRegistryServiceDep,
    status: str | None = Query(default=None, pattern=_STATUS_PATTERN),
    search: str | None = Query(default=None, max_length=256),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
) -> list[RegistryTenant]:
    rows = await service.list_tenants(status=status, search=search, limit=limit, offset=offset)
    return [_tenant(r) for r in rows]


@router.get("/stats", summary="Tenant counts on both planes")
async def registry_stats(service: TenantRegistryServiceDep) -> dict[str, Any]:
    return await service.get_stats()


@router.get("/{tenant_id}", response_model=RegistryTenant, summary="Get a tenant")
async def get_tenant(tenant_id: str, service: TenantRegistryServiceDep) -> RegistryTenant:
    return _tenant(await service.get_tenant(tenant_id))


@router.get("/{tenant_id}/events", response_model=list[TenantEventResponse], summary="Tenant audit trail")
async def list_tenant_events(
    tenant_id: str,
    service: TenantRegistryServiceDep,
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[TenantEventResponse]:
    rows = await service.list_events(tenant_id, limit=limit)
    return [
        TenantEventResponse(
            id=r.id,
            tenant_id=r.tenant_id,
            event_type=r.event_type,
            event_data=r.event_data or {},
            triggered_by=r.triggered_by_system,
            created_at=_iso(r.created_at),
        )
        for r in rows
    ]


@router.post("/{tenant_id}/provision", response_model=CommandResponse, summary="Retry forwarding the create")
async def retry_provisioning(tenant_id: str, service: TenantRegistryServiceDep) -> JSONResponse:
    result = await service.retry_provisioning(tenant_id)
    return _accepted(result, 200 if result.forwarded else 202)


@router.post("/{tenant_id}/disable", status_code=202, response_model=CommandResponse, summary="Disable a tenant")
async def disable_tenant(
    tenant_id: str,
    service: TenantRegistryServiceDep,
    body: DisableRequest | None = None,
) -> JSONResponse:
    return _accepted(await service.disable_tenant(tenant_id, body.reason if body else None))


@router.post("/{tenant_id}/enable", status_code=202, response_model=CommandResponse, summary="Enable a tenant")
async def enable_tenant(tenant_id: str, service: TenantRegistryServiceDep) -> JSONResponse:
    return _accepted(await service.enable_tenant(tenant_id))


@router.delete("/{tenant_id}", status_code=202, response_model=CommandResponse, summary="Delete a tenant")
async def delete_tenant(tenant_id: str, service: TenantRegistryServiceDep) -> JSONResponse:
    result = await service.delete_tenant(tenant_id)
    # An unprovisioned tenant is deleted locally and needs no confirmation.
    return _accepted(result, 202 if result.forwarded else 200)


@router.patch("/{tenant_id}/notes", response_model=CommandResponse, summary="Update admin notes")
async def update_notes(tenant_id: str, body: NotesRequest, service: TenantRegistryServiceDep) -> CommandResponse:
    return _command(await service.update_notes(tenant_id, body.notes))
