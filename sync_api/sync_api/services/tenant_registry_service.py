"""Control-plane tenant registry.

The control plane owns tenant identity, but a tenant's status only moves
when the data plane confirms a change through the webhook receiver.
Commands therefore check the transition locally, forward it to the data
plane and return; the confirmation arrives asynchronously.

The one exception is a ``pending`` tenant that never got a workspace
(the create command did not reach the data plane): deleting it is applied
locally because there is nothing on the other side to confirm it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from sync_api.services.crm_client import DataPlaneClient
from sync_core.errors import DataPlaneError, IllegalTransitionError, TenantNotFoundError
from sync_core.lifecycle import TenantStatus, Transition, apply_transition
from sync_core.state.repository import TenantEventRepository, TenantRepository
from sync_core.state.tables import TenantEventTable, TenantTable
from sync_core.state.transitions import transition_record
from sync_core.subdomains import resolve_subdomain

logger = logging.getLogger(__name__)

_TRIGGERED_BY = "control-plane"


@dataclass
class ForwardResult:
    """A tenant plus the outcome of forwarding a command to the data plane."""

    tenant: TenantTable
    forwarded: bool
    error: str | None = None
    data_plane: dict[str, Any] | None = None


class TenantRegistryService:
    """Create and manage control-plane tenants.

    Parameters
    ----------
    session:
        The request's session.  ``create_tenant`` commits it before
        forwarding so the confirmation webhook can find the new tenant.
    data_plane:
        Client for the data-plane Command API.
    """

    def __init__(self, session: AsyncSession, *, data_plane: DataPlaneClient) -> None:
        self._session = session
        self._data_plane = data_plane
        self._tenants = TenantRepository(session)
        self._events = TenantEventRepository(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_tenant(self, tenant_id: str) -> TenantTable:
        tenant = await self._tenants.get(tenant_id)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        return tenant

    async def list_tenants(
        self,
        *,
        status: str | None = None,
        search: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TenantTable]:
        return await self._tenants.list_all(status=status, search=search, limit=limit, offset=offset)

    async def list_events(self, tenant_id: str, *, limit: int = 100) -> list[TenantEventTable]:
        await self.get_tenant(tenant_id)
        return await self._events.list_for_tenant(tenant_id, limit=limit)

    async def get_stats(self) -> dict[str, Any]:
        counts = await self._tenants.count_by_status()
        local = {status.value: counts.get(status.value, 0) for status in TenantStatus}
        try:
            remote: dict[str, Any] | None = await self._data_plane.get_stats()
        except DataPlaneError as exc:
            logger.warning("Data plane stats unavailable: %s", exc)
            remote = None
        return {"control_plane": local, "data_plane": remote}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_tenant(
        self,
        email: str,
        *,
        display_name: str | None = None,
        subdomain: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ForwardResult:
        """Register a ``pending`` tenant and ask the data plane to create it.

        A forwarding failure leaves the tenant ``pending``; it can be
        retried with :meth:`retry_provisioning`.
        """
        resolved = resolve_subdomain(email, subdomain)
        tenant = await self._tenants.create(
            display_name=(display_name or resolved).strip(),
            subdomain=resolved,
            owner_email=email,
            metadata=metadata,
        )
        await self._events.append(
            tenant.id,
            "created",
            {"subdomain": tenant.subdomain, "owner_email": tenant.owner_email},
            triggered_by=_TRIGGERED_BY,
        )
        await self._session.commit()
        logger.info("Tenant registered: tenant=%s subdomain=%s", tenant.id, tenant.subdomain)

        return await self._forward_create(tenant, first_name=first_name, last_name=last_name)

    async def retry_provisioning(self, tenant_id: str) -> ForwardResult:
        """Forward the create command again for a tenant still waiting for a workspace."""
        tenant = await self.get_tenant(tenant_id)
        if tenant.status != TenantStatus.PENDING.value or tenant.crm_workspace_id is not None:
            raise IllegalTransitionError(tenant.status, "provision")
        return await self._forward_create(tenant)

    async def disable_tenant(self, tenant_id: str, reason: str | None = None) -> ForwardResult:
        tenant = await self._linked_tenant(tenant_id, Transition.DISABLE)
        response = await self._data_plane.disable_tenant(tenant.crm_workspace_id, reason)
        logger.info("Disable forwarded: tenant=%s reason=%s", tenant.id, reason)
        return ForwardResult(tenant=tenant, forwarded=True, data_plane=response)

    async def enable_tenant(self, tenant_id: str) -> ForwardResult:
        tenant = await self._linked_tenant(tenant_id, Transition.ENABLE)
        response = await self._data_plane.enable_tenant(tenant.crm_workspace_id)
        logger.info("Enable forwarded: tenant=%s", tenant.id)
        return ForwardResult(tenant=tenant, forwarded=True, data_plane=response)

    async def delete_tenant(self, tenant_id: str) -> ForwardResult:
        tenant = await self.get_tenant(tenant_id)
        if tenant.crm_workspace_id is None and tenant.status == TenantStatus.PENDING.value:
            tenant, result = await transition_record(self._tenants, tenant.id, Transition.DELETE)
            await self._events.append(
                tenant.id,
                "deleted",
                {"previous_status": result.previous.value, "unprovisioned": True},
                triggered_by=_TRIGGERED_BY,
            )
            logger.info("Unprovisioned tenant deleted locally: tenant=%s", tenant.id)
            return ForwardResult(tenant=tenant, forwarded=False)

        tenant = await self._linked_tenant(tenant_id, Transition.DELETE)
        response = await self._data_plane.delete_tenant(tenant.crm_workspace_id)
        logger.info("Delete forwarded: tenant=%s", tenant.id)
        return ForwardResult(tenant=tenant, forwarded=True, data_plane=response)

    async def update_notes(self, tenant_id: str, notes: str | None) -> ForwardResult:
        """Update admin notes locally and mirror them to the data plane if linked."""
        tenant = await self._tenants.update_notes(tenant_id, notes)
        if tenant is None:
            raise TenantNotFoundError(tenant_id)
        await self._events.append(tenant.id, "settings_updated", {"admin_notes": notes}, triggered_by=_TRIGGERED_BY)
        if tenant.crm_workspace_id is None:
            return ForwardResult(tenant=tenant, forwarded=False)
        try:
            response = await self._data_plane.update_notes(tenant.crm_workspace_id, notes)
        except DataPlaneError as exc:
            logger.warning("Notes not mirrored to data plane for tenant %s: %s", tenant.id, exc)
            return ForwardResult(tenant=tenant, forwarded=False, error=exc.detail)
        return ForwardResult(tenant=tenant, forwarded=True, data_plane=response)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _linked_tenant(self, tenant_id: str, transition: Transition) -> TenantTable:
        """Return the tenant if *transition* is allowed and it has a workspace.

        Raises
        ------
        IllegalTransitionError
            If the status forbids the transition or no workspace is linked yet.
        """
        tenant = await self.get_tenant(tenant_id)
        apply_transition(tenant.status, transition)
        if tenant.crm_workspace_id is None:
            raise IllegalTransitionError(tenant.status, transition.value)
        return tenant

    async def _forward_create(
        self,
        tenant: TenantTable,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> ForwardResult:
        try:
            response = await self._data_plane.create_tenant(
                email=tenant.owner_email,
                external_id=tenant.id,
                display_name=tenant.display_name,
                subdomain=tenant.subdomain,
                first_name=first_name,
                last_name=last_name,
            )
        except DataPlaneError as exc:
            logger.error("Create not forwarded for tenant %s: %s", tenant.id, exc)
            return ForwardResult(tenant=tenant, forwarded=False, error=exc.detail)
        logger.info("Create forwarded: tenant=%s workspace=%s", tenant.id, response.get("id"))
        return ForwardResult(tenant=tenant, forwarded=True, data_plane=response)
