"""Data-plane tenant commands issued by the control plane.

Every status change and its outbound notification are written in the
caller's session, so they commit (or roll back) together.  Commands that
find the workspace already in the requested state succeed without
enqueueing anything, except a disable that changes the reason.

Dropping a deleted workspace's storage cannot be rolled back, so it is
not part of :meth:`TenantAdminService.delete_tenant`; the caller runs
:meth:`TenantAdminService.release_storage` once the delete has committed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from sync_api.services.collaborators import StorageProvisioner, UserDirectory
from sync_api.services.delivery_queue import OutboundDeliveryQueue
from sync_core.errors import TenantNotFoundError, TenantSyncError
from sync_core.events import EMITTED_EVENT
from sync_core.lifecycle import TenantStatus, Transition, TransitionResult
from sync_core.state.repository import WorkspaceRepository
from sync_core.state.tables import WorkspaceTable
from sync_core.state.transitions import transition_record
from sync_core.subdomains import resolve_subdomain

logger = logging.getLogger(__name__)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def build_event_payload(workspace: WorkspaceTable, transition: Transition, now: datetime) -> dict[str, Any]:
    """Fields sent to the control plane for a transition of *workspace*."""
    data: dict[str, Any] = {
        "crm_workspace_id": workspace.id,
        "tenant_id": workspace.external_id,
        "subdomain": workspace.subdomain,
    }
    if transition == Transition.CONFIRM:
        data["display_name"] = workspace.display_name
        data["created_at"] = _iso(workspace.created_at)
    elif transition == Transition.DISABLE:
        data["disabled_at"] = _iso(workspace.disabled_at)
        data["disabled_reason"] = workspace.disabled_reason
    elif transition == Transition.ENABLE:
        data["enabled_at"] = now.isoformat()
    elif transition == Transition.DELETE:
        data["deleted_at"] = now.isoformat()
    return data


class TenantAdminService:
    """Create, disable, enable, delete and annotate workspaces.

    Parameters
    ----------
    session:
        The request's session; the service never commits it.
    queue:
        Outbox used to notify the control plane.
    provisioner:
        Creates and drops a workspace's isolated storage.
    users:
        Resolves the workspace owner by email.
    """

    def __init__(
        self,
        session: AsyncSession,
        *,
        queue: OutboundDeliveryQueue,
        provisioner: StorageProvisioner,
        users: UserDirectory,
    ) -> None:
        self._session = session
        self._queue = queue
        self._provisioner = provisioner
        self._users = users
        self._repo = WorkspaceRepository(session)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_tenant(self, workspace_id: str) -> WorkspaceTable:
        row = await self._repo.get(workspace_id)
        if row is None:
            raise TenantNotFoundError(workspace_id)
        return row

    async def list_tenants(self, *, include_disabled: bool = False, search: str | None = None) -> list[WorkspaceTable]:
        return await self._repo.list_all(include_disabled=include_disabled, search=search)

    async def get_stats(self) -> dict[str, int]:
        counts = await self._repo.count_by_status()
        active = counts.get(TenantStatus.ACTIVE.value, 0)
        disabled = counts.get(TenantStatus.DISABLED.value, 0)
        pending = counts.get(TenantStatus.PENDING.value, 0)
        return {
            "total_tenants": active + disabled + pending,
            "active_tenants": active,
            "disabled_tenants": disabled,
            "pending_tenants": pending,
            "deleted_tenants": counts.get(TenantStatus.DELETED.value, 0),
            "total_users": await self._users.count(),
        }

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
        external_id: str | None = None,
    ) -> WorkspaceTable:
        """Create a workspace, provision its storage and confirm it.

        Raises
        ------
        DuplicateSubdomainError
            If the subdomain is held by any workspace, including deleted ones.
        ValueError
            If the subdomain is invalid or cannot be derived from *email*.
        """
        resolved = resolve_subdomain(email, subdomain)
        owner_id = await self._users.get_or_create(email, first_name=first_name, last_name=last_name)
        workspace = await self._repo.create(
            display_name=(display_name or resolved).strip(),
            subdomain=resolved,
            owner_user_id=owner_id,
            external_id=external_id,
        )
        await self._provisioner.create(workspace.id)

        workspace, _ = await self._transition(workspace.id, Transition.CONFIRM)
        logger.info(
            "Tenant created: workspace=%s subdomain=%s external_id=%s",
            workspace.id,
            workspace.subdomain,
            external_id,
        )
        return workspace

    async def disable_tenant(self, workspace_id: str, reason: str | None = None) -> WorkspaceTable:
        """Disable a workspace.

        An already-disabled workspace gets the new reason, and a changed
        reason is sent to the control plane as another ``tenant.disabled``.
        """
        now = datetime.now(UTC)
        workspace, result = await self._transition(
            workspace_id,
            Transition.DISABLE,
            {"disabled_at": now, "disabled_reason": reason},
        )
        if not result.applied and workspace.disabled_reason != reason:
            if await self._repo.update_status(workspace_id, TenantStatus.DISABLED.value, {"disabled_reason": reason}):
                workspace = await self.get_tenant(workspace_id)
                await self._notify(workspace, Transition.DISABLE)
        logger.info("Tenant disabled: workspace=%s reason=%s applied=%s", workspace_id, reason, result.applied)
        return workspace

    async def enable_tenant(self, workspace_id: str) -> WorkspaceTable:
        workspace, result = await self._transition(
            workspace_id,
            Transition.ENABLE,
            {"disabled_at": None, "disabled_reason": None},
        )
        logger.info("Tenant enabled: workspace=%s applied=%s", workspace_id, result.applied)
        return workspace

    async def delete_tenant(self, workspace_id: str) -> dict[str, Any]:
        """Delete a workspace, leaving a tombstone.

        Storage is left in place; call :meth:`release_storage` after the
        session has committed when ``already_deleted`` is false.
        """
        workspace, result = await self._transition(
            workspace_id,
            Transition.DELETE,
            {"disabled_at": None, "disabled_reason": None},
        )
        logger.info("Tenant deleted: workspace=%s applied=%s", workspace_id, result.applied)
        return {
            "success": True,
            "tenant_id": workspace.id,
            "subdomain": workspace.subdomain,
            "already_deleted": not result.applied,
        }

    async def release_storage(self, workspace_id: str) -> None:
        """Drop a deleted workspace's storage; failures are logged, not raised."""
        try:
            await self._provisioner.drop(workspace_id)
        except Exception as exc:
            logger.warning(
                "Storage cleanup failed for deleted workspace %s: %s",
                workspace_id,
                exc,
                exc_info=True,
            )

    async def update_notes(self, workspace_id: str, notes: str | None) -> WorkspaceTable:
        row = await self._repo.update_notes(workspace_id, notes)
        if row is None:
            raise TenantNotFoundError(workspace_id)
        return row

    async def bulk_disable(self, workspace_ids: list[str], reason: str | None = None) -> dict[str, Any]:
        return await self._bulk(workspace_ids, lambda wid: self.disable_tenant(wid, reason))

    async def bulk_enable(self, workspace_ids: list[str]) -> dict[str, Any]:
        return await self._bulk(workspace_ids, self.enable_tenant)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _bulk(self, workspace_ids: list[str], command: Any) -> dict[str, Any]:
        succeeded = 0
        errors: list[dict[str, str]] = []
        for workspace_id in workspace_ids:
            try:
                await command(workspace_id)
                succeeded += 1
            except TenantSyncError as exc:
                errors.append({"tenant_id": workspace_id, "error": exc.kind, "detail": exc.detail})
        return {
            "total": len(workspace_ids),
            "succeeded": succeeded,
            "failed": len(errors),
            "errors": errors,
        }

    async def _transition(
        self,
        workspace_id: str,
        transition: Transition,
        values: dict[str, Any] | None = None,
    ) -> tuple[WorkspaceTable, TransitionResult]:
        """Apply *transition* and enqueue its notification if the status changed."""
        workspace, result = await transition_record(self._repo, workspace_id, transition, values)
        if result.applied:
            await self._notify(workspace, transition)
        return workspace, result

    async def _notify(self, workspace: WorkspaceTable, transition: Transition) -> None:
        await self._queue.enqueue(
            EMITTED_EVENT[transition].value,
            build_event_payload(workspace, transition, datetime.now(UTC)),
            tenant_key=workspace.id,
            session=self._session,
        )
