"""TenantSync CLI application.

Human-readable output goes to *stderr* via Rich; machine-readable output
(``events --json``, ``sign``) goes to *stdout* so that it can be piped.
"""

from __future__ import annotations

import logging

import typer

app = typer.Typer(
    name="tenantsync",
    help="TenantSync - tenant lifecycle synchronization between control and data planes",
    no_args_is_help=True,
)

from sync_cli.commands.outbox import drain_command, events_command, rearm_command  # noqa: E402
from sync_cli.commands.serve import serve_command  # noqa: E402
from sync_cli.commands.sign import sign_command  # noqa: E402

app.command(name="serve")(serve_command)
app.command(name="drain")(drain_command)
app.command(name="events")(events_command)
app.command(name="rearm")(rearm_command)
app.command(name="sign")(sign_command)


@app.callback()
def _global_options(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at DEBUG level."),
) -> None:
    """Global options applied to every command."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
