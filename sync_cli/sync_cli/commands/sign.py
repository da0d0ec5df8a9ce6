"""``tenantsync sign`` -- produce a webhook signature header for a payload.

Handy for replaying a webhook by hand::

    body='{"event":"tenant.disabled","timestamp":0,"data":{...}}'
    curl -H "x-webhook-signature: $(tenantsync sign --secret s "$body")" ...
"""

from __future__ import annotations

import sys
import time

import typer

from sync_core.signing import sign


def sign_command(
    payload: str = typer.Argument("-", help="Payload to sign, or '-' to read stdin."),
    secret: str = typer.Option(..., "--secret", envvar="TENANTSYNC_WEBHOOK_SECRET", help="Shared HMAC secret."),
    timestamp: int | None = typer.Option(None, "--timestamp", "-t", help="Epoch seconds (default: now)."),
) -> None:
    """Print ``t=<timestamp>,v1=<hex>`` for PAYLOAD."""
    body = sys.stdin.read() if payload == "-" else payload
    typer.echo(sign(body, secret, timestamp if timestamp is not None else int(time.time())))
