"""Tests for the ``tenantsync`` CLI.

Uses typer.testing.CliRunner against a temporary SQLite store passed with
``--database-url``; outbound deliveries target a closed local port so
they fail immediately with a connection error.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from sync_api.config import APISettings, Plane
from sync_cli.app import app
from sync_cli.commands.outbox import open_queue
from sync_cli.commands.serve import _build_endpoints_table
from sync_core.signing import sign, verify

runner = CliRunner()

_UNREACHABLE = "http://127.0.0.1:9/api/v1/webhooks/tenant"


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"


def _seed(database_url: str, count: int = 1) -> list[str]:
    settings = APISettings(database_url=database_url, delivery_timeout_seconds=2.0)

    async def _main() -> list[str]:
        async with open_queue(settings) as queue:
            return [
                await queue.enqueue(
                    "tenant.created",
                    {"crm_workspace_id": f"ws-{i}", "tenant_id": f"t-{i}"},
                    _UNREACHABLE,
                    tenant_key=f"ws-{i}",
                )
                for i in range(count)
            ]

    return asyncio.run(_main())


def _events(database_url: str, *extra: str) -> list[dict]:
    result = runner.invoke(app, ["events", "--json", "--database-url", database_url, *extra])
    assert result.exit_code == 0, result.output
    return json.loads(result.stdout)


# ---------------------------------------------------------------------------
# sign
# ---------------------------------------------------------------------------


class TestSign:
    def test_signs_argument(self) -> None:
        result = runner.invoke(app, ["sign", "--secret", "s3cret", "--timestamp", "1700000000", '{"event":"x"}'])

        assert result.exit_code == 0
        header = result.stdout.strip()
        assert header == sign('{"event":"x"}', "s3cret", 1700000000)
        assert verify('{"event":"x"}', header, "s3cret", now=1700000000)

    def test_reads_stdin(self) -> None:
        result = runner.invoke(app, ["sign", "--secret", "s3cret", "-t", "1700000000"], input="payload")

        assert result.exit_code == 0
        assert result.stdout.strip() == sign("payload", "s3cret", 1700000000)

    def test_secret_from_environment(self) -> None:
        result = runner.invoke(
            app,
            ["sign", "-t", "1700000000", "body"],
            env={"TENANTSYNC_WEBHOOK_SECRET": "from-env"},
        )

        assert result.exit_code == 0
        assert result.stdout.strip() == sign("body", "from-env", 1700000000)


# ---------------------------------------------------------------------------
# Outbound queue commands
# ---------------------------------------------------------------------------


class TestOutboxCommands:
    def test_events_empty(self, database_url: str) -> None:
        assert _events(database_url) == []

        result = runner.invoke(app, ["events", "--database-url", database_url])
        assert result.exit_code == 0
        assert "No outbound events" in result.output

    def test_events_lists_pending(self, database_url: str) -> None:
        (event_id,) = _seed(database_url)

        events = _events(database_url)

        assert len(events) == 1
        assert events[0]["event_id"] == event_id
        assert events[0]["status"] == "pending"
        assert events[0]["tenant_key"] == "ws-0"
        assert events[0]["exhausted"] is False

    def test_events_filters(self, database_url: str) -> None:
        _seed(database_url, count=2)

        assert len(_events(database_url, "--tenant", "ws-1")) == 1
        assert _events(database_url, "--status", "sent") == []

    def test_events_rejects_unknown_status(self, database_url: str) -> None:
        result = runner.invoke(app, ["events", "--status", "bogus", "--database-url", database_url])
        assert result.exit_code == 3

    def test_drain_and_rearm(self, database_url: str) -> None:
        (event_id,) = _seed(database_url)

        drained = runner.invoke(app, ["drain", "--database-url", database_url])
        assert drained.exit_code == 0, drained.output
        assert "Attempted 1 delivery(ies)" in drained.output

        (failed,) = _events(database_url, "--status", "failed")
        assert failed["attempts"] == 1
        assert failed["last_error"].startswith("Request error")
        assert failed["next_retry_at"] is not None

        rearmed = runner.invoke(app, ["rearm", event_id, "--database-url", database_url])
        assert rearmed.exit_code == 0
        assert f"Re-armed {event_id}" in rearmed.output

        (pending,) = _events(database_url, "--status", "pending")
        assert pending["attempts"] == 0

    def test_drain_empty_store(self, database_url: str) -> None:
        result = runner.invoke(app, ["drain", "-n", "10", "--database-url", database_url])
        assert result.exit_code == 0
        assert "Attempted 0 delivery(ies)" in result.output

    def test_rearm_unknown_event(self, database_url: str) -> None:
        result = runner.invoke(app, ["rearm", "nope", "--database-url", database_url])
        assert result.exit_code == 1
        assert "not found or not failed" in result.output

    def test_store_unavailable(self, tmp_path: Path) -> None:
        # A directory cannot be opened as a SQLite database.
        result = runner.invoke(app, ["drain", "--database-url", f"sqlite+aiosqlite:///{tmp_path}"])
        assert result.exit_code == 2
        assert "Store unavailable" in result.output


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("plane", "expected"),
    [
        (Plane.DATA, ["Command API", "Readiness", "Metrics"]),
        (Plane.CONTROL, ["Tenant registry", "Webhook receiver", "Readiness", "Metrics"]),
        (Plane.ALL, ["Command API", "Tenant registry", "Webhook receiver", "Readiness", "Metrics"]),
    ],
)
def test_endpoints_table(plane: Plane, expected: list[str]) -> None:
    table = _build_endpoints_table("127.0.0.1", 8000, plane)
    assert list(table.columns[0].cells) == expected


def test_no_args_shows_help() -> None:
    result = runner.invoke(app, [])
    assert "serve" in result.output
    assert "drain" in result.output
