"""HTTP client the control plane uses to forward commands to the data plane."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from sync_core.errors import DataPlaneError

logger = logging.getLogger(__name__)

_ADMIN_KEY_HEADER = "x-saas-admin-key"


class DataPlaneClient:
    """Async wrapper around the data-plane Command API (``/api/v1/saas``).

    Unlike best-effort clients, every method raises
    :class:`DataPlaneError` on failure because the caller must know
    whether the command reached the data plane.  Data-plane 4xx responses
    keep their status code and error kind; everything else becomes 502.

    Parameters
    ----------
    base_url:
        Root of the Command API (e.g. ``http://crm:8000/api/v1/saas``).
    admin_key:
        Shared static key sent in ``x-saas-admin-key``.
    timeout:
        Per-request timeout in seconds.
    http_client:
        Optional ``httpx.AsyncClient`` (tests inject a mock transport).
    """

    def __init__(
        self,
        base_url: str,
        admin_key: str,
        *,
        timeout: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json", _ADMIN_KEY_HEADER: admin_key}
        self._timeout = timeout
        self._client = http_client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = http_client is None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # -- Commands -------------------------------------------------------------

    async def create_tenant(
        self,
        *,
        email: str,
        external_id: str,
        display_name: str | None = None,
        subdomain: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"email": email, "external_id": external_id}
        for key, value in (
            ("display_name", display_name),
            ("subdomain", subdomain),
            ("first_name", first_name),
            ("last_name", last_name),
        ):
            if value is not None:
                payload[key] = value
        return await self._request("POST", "/tenants", payload)

    async def disable_tenant(self, workspace_id: str, reason: str | None = None) -> dict[str, Any]:
        return await self._request("POST", f"/tenants/{workspace_id}/disable", {"reason": reason})

    async def enable_tenant(self, workspace_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/tenants/{workspace_id}/enable")

    async def delete_tenant(self, workspace_id: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/tenants/{workspace_id}")

    async def update_notes(self, workspace_id: str, notes: str | None) -> dict[str, Any]:
        return await self._request("PATCH", f"/tenants/{workspace_id}/notes", {"notes": notes})

    async def get_stats(self) -> dict[str, Any]:
        return await self._request("GET", "/stats")

    # -- Transport ------------------------------------------------------------

    async def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._client.request(
                method,
                url,
                json=payload,
                headers=self._headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            logger.error("Data plane timed out: %s %s", method, path)
            raise DataPlaneError(f"Data plane timed out after {self._timeout}s", status_code=504) from None
        except httpx.RequestError as exc:
            logger.error("Data plane unreachable: %s %s: %s", method, path, exc)
            raise DataPlaneError(f"Data plane unreachable: {type(exc).__name__}") from None

        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            kind = body.get("error") if isinstance(body, dict) else None
            detail = body.get("detail") if isinstance(body, dict) else None
            logger.warning(
                "Data plane rejected %s %s: status=%d error=%s",
                method,
                path,
                response.status_code,
                kind,
            )
            if 400 <= response.status_code < 500:
                raise DataPlaneError(
                    str(detail or f"Data plane returned HTTP {response.status_code}"),
                    status_code=response.status_code,
                    kind=kind,
                )
            raise DataPlaneError(f"Data plane returned HTTP {response.status_code}")

        return response.json()
