"""Rich output formatting for the TenantSync CLI."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

from rich.console import Console
from rich.table import Table

_STATUS_COLOURS: dict[str, str] = {
    "pending": "yellow",
    "sending": "cyan",
    "sent": "green",
    "failed": "red",
}


def _coloured_status(status: str, exhausted: bool) -> str:
    colour = _STATUS_COLOURS.get(status, "white")
    label = "exhausted" if exhausted else status
    return f"[{colour}]{label}[/{colour}]"


def event_to_dict(row: Any) -> dict[str, Any]:
    """Flatten an ``OutboundEventTable`` row for JSON output."""
    return {
        "event_id": row.event_id,
        "tenant_key": row.tenant_key,
        "event_type": row.event_type,
        "status": row.status,
        "attempts": row.attempts,
        "max_attempts": row.max_attempts,
        "exhausted": row.status == "failed" and row.attempts >= row.max_attempts,
        "last_error": row.last_error,
        "created_at": row.created_at.isoformat() if row.created_at else None,
        "next_retry_at": row.next_retry_at.isoformat() if row.next_retry_at else None,
        "sent_at": row.sent_at.isoformat() if row.sent_at else None,
    }


def display_outbound_events(console: Console, rows: Sequence[Any]) -> None:
    """Render outbound events as a table, newest last."""
    if not rows:
        console.print("[dim]No outbound events.[/dim]")
        return

    table = Table(title=f"Outbound events ({len(rows)})", show_header=True, header_style="bold")
    table.add_column("Event ID", no_wrap=True)
    table.add_column("Type")
    table.add_column("Tenant")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next retry")
    table.add_column("Last error", overflow="fold", max_width=48)

    for row in rows:
        item = event_to_dict(row)
        table.add_row(
            item["event_id"],
            item["event_type"],
            item["tenant_key"] or "-",
            _coloured_status(item["status"], item["exhausted"]),
            f"{item['attempts']}/{item['max_attempts']}",
            "-" if item["status"] == "sent" else (item["next_retry_at"] or "-"),
            item["last_error"] or "",
        )
    console.print(table)
