"""Outbound queue commands: ``drain``, ``events`` and ``rearm``.

They talk to the store directly, so an operator can inspect and unstick
deliveries even while the service is down.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import typer
from rich.console import Console
from sqlalchemy.exc import OperationalError

from sync_api.config import APISettings, load_api_settings
from sync_api.services.delivery_queue import DeliveryPolicy, OutboundDeliveryQueue
from sync_cli.display import display_outbound_events, event_to_dict
from sync_core.errors import StoreUnavailableError
from sync_core.state.database import get_engine, get_session_factory

T = TypeVar("T")

_DATABASE_URL_HELP = "Database URL (default: TENANTSYNC_DATABASE_URL)."


def _settings(database_url: str | None) -> APISettings:
    settings = load_api_settings()
    if database_url:
        settings = settings.model_copy(update={"database_url": database_url})
    return settings


@asynccontextmanager
async def open_queue(settings: APISettings) -> AsyncGenerator[OutboundDeliveryQueue, None]:
    """Yield a delivery queue bound to a fresh engine, disposing both on exit."""
    engine = get_engine(settings.database_url, pool_size=2, max_overflow=0)
    if settings.database_url.startswith("sqlite"):
        from sync_core.state.sqlite_adapter import create_local_tables

        try:
            await create_local_tables(engine)
        except (OperationalError, OSError) as exc:
            await engine.dispose()
            raise StoreUnavailableError(f"Cannot open {settings.database_url}: {exc}") from exc
    queue = OutboundDeliveryQueue(
        get_session_factory(engine),
        secret=settings.webhook_secret.get_secret_value(),
        target_url=settings.control_plane_webhook_url,
        policy=DeliveryPolicy.from_settings(settings),
    )
    try:
        yield queue
    finally:
        await queue.close()
        await engine.dispose()


def _run(settings: APISettings, action: Callable[[OutboundDeliveryQueue], Awaitable[T]]) -> T:
    async def _main() -> T:
        async with open_queue(settings) as queue:
            return await action(queue)

    console = Console(stderr=True)
    try:
        return asyncio.run(_main())
    except StoreUnavailableError as exc:
        console.print(f"[red]Store unavailable:[/red] {exc}")
        raise typer.Exit(code=2) from exc


def drain_command(
    batch_limit: int | None = typer.Option(None, "--batch-limit", "-n", min=1, help="Maximum events to attempt."),
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """Attempt delivery of due outbound events once."""
    console = Console(stderr=True)
    attempted = _run(_settings(database_url), lambda queue: queue.drain(batch_limit))
    console.print(f"[green]✓[/green] Attempted {attempted} delivery(ies)")


def events_command(
    status: str | None = typer.Option(None, "--status", "-s", help="pending | sending | sent | failed"),
    exhausted: bool = typer.Option(False, "--exhausted", help="Only events that used up their attempts."),
    tenant: str | None = typer.Option(None, "--tenant", help="Filter by tenant key."),
    limit: int = typer.Option(50, "--limit", min=1, max=1000),
    json_output: bool = typer.Option(False, "--json", help="Emit JSON to stdout."),
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """List outbound events."""
    if status is not None and status not in ("pending", "sending", "sent", "failed"):
        Console(stderr=True).print(f"[red]Unknown status '{status}'[/red]")
        raise typer.Exit(code=3)

    rows: list[Any] = _run(
        _settings(database_url),
        lambda queue: queue.list_events(status=status, exhausted_only=exhausted, tenant_key=tenant, limit=limit),
    )
    if json_output:
        typer.echo(json.dumps([event_to_dict(r) for r in rows], indent=2))
        return
    display_outbound_events(Console(stderr=True), rows)


def rearm_command(
    event_id: str = typer.Argument(..., help="event_id of a failed outbound event."),
    database_url: str | None = typer.Option(None, "--database-url", help=_DATABASE_URL_HELP),
) -> None:
    """Reset a failed outbound event so the next drain retries it."""
    console = Console(stderr=True)
    if not _run(_settings(database_url), lambda queue: queue.rearm(event_id)):
        console.print(f"[red]Event '{event_id}' not found or not failed.[/red]")
        raise typer.Exit(code=1)
    console.print(f"[green]✓[/green] Re-armed {event_id}")
