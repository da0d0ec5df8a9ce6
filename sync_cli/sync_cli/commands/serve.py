"""``tenantsync serve`` -- run the HTTP service with uvicorn."""

from __future__ import annotations

import os

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from sync_api.config import Plane


def _build_endpoints_table(host: str, port: int, plane: Plane) -> Table:
    table = Table(show_header=True, header_style="bold")
    table.add_column("Endpoint")
    table.add_column("URL")
    base = f"http://{host}:{port}"
    if plane.serves_data:
        table.add_row("Command API", f"{base}/api/v1/saas")
    if plane.serves_control:
        table.add_row("Tenant registry", f"{base}/api/v1/tenants")
        table.add_row("Webhook receiver", f"{base}/api/v1/webhooks/tenant")
    table.add_row("Readiness", f"{base}/ready")
    table.add_row("Metrics", f"{base}/metrics")
    return table


def serve_command(
    host: str = typer.Option("127.0.0.1", "--host", help="Host to bind to."),
    port: int = typer.Option(8000, "--port", "-p", help="Port to bind to."),
    plane: Plane = typer.Option(
        Plane.ALL,
        "--plane",
        help="Which plane to serve (data | control | all).",
        envvar="TENANTSYNC_PLANE",
    ),
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload on code changes."),
) -> None:
    """Start the TenantSync service."""
    console = Console(stderr=True)
    os.environ["TENANTSYNC_PLANE"] = plane.value

    console.print(Panel(_build_endpoints_table(host, port, plane), title=f"TenantSync ({plane.value})"))

    import uvicorn

    uvicorn.run(
        "sync_api.main:app_factory",
        factory=True,
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
