"""Entry point for `python -m sync_cli` and the `tenantsync` console script."""

from __future__ import annotations

from sync_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
