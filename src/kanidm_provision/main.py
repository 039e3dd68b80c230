"""kanidm-provision CLI - Main entrypoint.

Usage:
    kanidm-provision sync --url https://idm.example.com --state state.json
    kanidm-provision status --url https://idm.example.com
"""

from __future__ import annotations

import typer

from kanidm_provision.commands import status, sync

app = typer.Typer(
    name="kanidm-provision",
    help="Declarative provisioning for Kanidm",
    add_completion=True,
)

app.command("sync")(sync)
app.command("status")(status)


def create_app() -> None:
    """CLI entrypoint."""
    app()


if __name__ == "__main__":
    create_app()
