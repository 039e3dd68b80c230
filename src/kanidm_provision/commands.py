"""Provisioning CLI commands.

Commands:
    kanidm-provision sync --state state.json
    kanidm-provision status
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from kanidm_provision.client import KanidmClient
from kanidm_provision.codec import strip_realm
from kanidm_provision.errors import KanidmAuthError, KanidmError
from kanidm_provision.models import ProvisionState
from kanidm_provision.provision import run_provision
from kanidm_provision.settings import ProvisionSettings
from kanidm_provision.sync import SyncResult
from kanidm_provision.validation import PROVISION_TRACKING_GROUP

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    """Configure logging based on verbosity."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Quiet down httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def _build_settings(
    url: str | None,
    accept_invalid_certs: bool | None,
    auto_remove: bool | None = None,
) -> ProvisionSettings:
    """Build settings from environment and CLI overrides."""
    return ProvisionSettings().with_overrides(
        url=url,
        accept_invalid_certs=accept_invalid_certs,
        auto_remove=auto_remove,
    )


def sync(
    state_path: Annotated[
        Path,
        typer.Option(
            "--state",
            "-s",
            help="Path to the provisioning state (JSON or YAML)",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ],
    url: Annotated[
        Optional[str],
        typer.Option("--url", "-u", help="Kanidm base URL"),
    ] = None,
    accept_invalid_certs: Annotated[
        bool,
        typer.Option(
            "--accept-invalid-certs",
            help="Skip TLS certificate verification (testing instances only)",
        ),
    ] = False,
    no_auto_remove: Annotated[
        bool,
        typer.Option(
            "--no-auto-remove",
            help="Keep previously provisioned entities that are no longer declared",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """Provision Kanidm to match the declared state.

    The admin password is read from KANIDM_PROVISION_IDM_ADMIN_TOKEN.
    Running the command again against an unchanged server makes no changes.

    Example:
        kanidm-provision sync --url https://idm.example.com --state state.json
    """
    _configure_logging(verbose)

    settings = _build_settings(
        url=url,
        accept_invalid_certs=accept_invalid_certs or None,
        auto_remove=False if no_auto_remove else None,
    )

    # Load state
    try:
        state = ProvisionState.from_file(state_path)
    except Exception as e:
        typer.secho(f"Error loading state: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo(f"Provisioning Kanidm: {settings.base_url}")
    typer.echo(
        f"State: {len(state.groups)} groups, {len(state.persons)} persons, "
        f"{len(state.systems.oauth2)} oauth2 resource servers"
    )

    try:
        result = asyncio.run(_async_sync(settings, state))
    except KanidmAuthError as e:
        typer.secho(f"Authentication failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KanidmError as e:
        typer.secho(f"Kanidm error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo("\n" + result.summary())


async def _async_sync(settings: ProvisionSettings, state: ProvisionState) -> SyncResult:
    """Run the async provisioning."""
    async with KanidmClient(settings) as client:
        await client.login()
        return await run_provision(client, state, auto_remove=settings.auto_remove)


def status(
    url: Annotated[
        Optional[str],
        typer.Option("--url", "-u", help="Kanidm base URL"),
    ] = None,
    accept_invalid_certs: Annotated[
        bool,
        typer.Option(
            "--accept-invalid-certs",
            help="Skip TLS certificate verification (testing instances only)",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable verbose output"),
    ] = False,
) -> None:
    """Show the current Kanidm state (groups, persons, oauth2 resource servers).

    Example:
        kanidm-provision status --url https://idm.example.com
    """
    _configure_logging(verbose)

    settings = _build_settings(url=url, accept_invalid_certs=accept_invalid_certs or None)
    typer.echo(f"Kanidm: {settings.base_url}")

    try:
        asyncio.run(_async_status(settings))
    except KanidmAuthError as e:
        typer.secho(f"Authentication failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except KanidmError as e:
        typer.secho(f"Kanidm error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


async def _async_status(settings: ProvisionSettings) -> None:
    """Show current Kanidm status."""
    async with KanidmClient(settings) as client:
        await client.login()
        current = await client.fetch_current_state()

        tracking = current.groups.get(PROVISION_TRACKING_GROUP)
        provisioned = set()
        if tracking is not None:
            provisioned = {strip_realm(m) for m in tracking.values("member")}

        def mark(name: str) -> str:
            return " (provisioned)" if name in provisioned else ""

        typer.echo(f"\nGroups ({len(current.groups)}):")
        for name in sorted(current.groups):
            if name == PROVISION_TRACKING_GROUP:
                continue
            members = len(current.groups[name].values("member"))
            typer.echo(f"  - {name}: {members} members{mark(name)}")

        typer.echo(f"\nPersons ({len(current.persons)}):")
        for name in sorted(current.persons):
            display_name = current.persons[name].first("displayname") or ""
            typer.echo(f"  - {name}" + (f": {display_name}" if display_name else "") + mark(name))

        typer.echo(f"\nOAuth2 resource servers ({len(current.oauth2s)}):")
        for name in sorted(current.oauth2s):
            entity = current.oauth2s[name]
            kind = "public" if entity.is_public else "basic"
            typer.echo(f"  - {name} [{kind}]{mark(name)}")
            for origin in sorted(entity.values("oauth2_rs_origin")):
                typer.echo(f"      origin: {origin}")

        if tracking is None:
            typer.echo("\nNo entities have been provisioned yet")
        else:
            typer.echo(f"\nProvisioned entities: {len(provisioned)}")
