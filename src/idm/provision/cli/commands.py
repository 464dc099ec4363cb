"""Provisioning CLI commands.

Commands:
    idm-provision sync --url <url> --state <state.json>
    idm-provision validate --state <state.json>
    idm-provision status --url <url>
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from idm.provision.audit import AuditLogger, configure_audit_logging
from idm.provision.config import ProvisionSettings
from idm.provision.engine import SyncResult, apply_sync_plan, compute_sync_plan
from idm.provision.errors import (
    ApiError,
    FatalError,
    PlanError,
    ValidationError,
)
from idm.provision.logs import configure_logging
from idm.provision.remote import CurrentState, IdmAdminClient, fetch_current_state
from idm.provision.state import DesiredState

logger = logging.getLogger(__name__)

SERVICE_NAME = "idm-provision"

provision_app = typer.Typer(
    name="idm-provision",
    help="Declarative provisioning of groups, persons and OAuth2 resource servers",
    add_completion=False,
)

StateOption = Annotated[
    Path,
    typer.Option(
        "--state",
        "-s",
        help="Path to the desired-state document (JSON or YAML)",
        exists=True,
        dir_okay=False,
        readable=True,
    ),
]
UrlOption = Annotated[
    Optional[str],
    typer.Option("--url", "-u", help="Identity provider URL"),
]
InsecureOption = Annotated[
    bool,
    typer.Option(
        "--accept-invalid-certs",
        help="Skip TLS certificate verification (testing instances only)",
    ),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable verbose output"),
]


def _build_settings(
    url: str | None,
    accept_invalid_certs: bool,
    max_workers: int | None = None,
    audit_json: bool = False,
    verbose: bool = False,
) -> ProvisionSettings:
    """Build settings from environment and CLI overrides."""
    base = ProvisionSettings()
    return base.with_overrides(
        url=url,
        accept_invalid_certs=accept_invalid_certs or None,
        max_workers=max_workers,
        log_level="DEBUG" if verbose else None,
        audit_json=audit_json or None,
    )


def _load_state(state_path: Path) -> DesiredState:
    try:
        return DesiredState.from_file(state_path)
    except ValidationError as e:
        typer.secho(f"Invalid desired state: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)


def _describe_state(desired: DesiredState) -> str:
    return (
        f"{len(desired.groups)} groups, {len(desired.persons)} persons, "
        f"{len(desired.systems.oauth2)} oauth2 resource servers"
    )


def _describe_current(current: CurrentState) -> str:
    return (
        f"Found {len(current.groups)} groups, {len(current.persons)} persons, "
        f"{len(current.oauth2)} oauth2 resource servers "
        f"({len(current.tracked)} tracked)"
    )


@provision_app.command("sync")
def sync(
    state_path: StateOption,
    url: UrlOption = None,
    no_auto_remove: Annotated[
        bool,
        typer.Option(
            "--no-auto-remove",
            help="Keep orphaned entities instead of deleting them",
        ),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run", "-n", help="Show what would be done without making changes"
        ),
    ] = False,
    accept_invalid_certs: InsecureOption = False,
    max_workers: Annotated[
        Optional[int],
        typer.Option("--max-workers", min=1, help="Maximum concurrent writes"),
    ] = None,
    audit_json: Annotated[
        bool,
        typer.Option("--audit-json", help="Emit the audit trail as JSON"),
    ] = False,
    verbose: VerboseOption = False,
) -> None:
    """Reconcile the directory with the desired-state document.

    Entities created by this tool are recorded in the tracking group. Tracked
    entities that disappear from the document are deleted unless
    --no-auto-remove is given. Running it twice is a no-op the second time.

    Example:
        idm-provision sync --url https://idm.example.com --state state.json --dry-run
    """
    settings = _build_settings(url, accept_invalid_certs, max_workers, audit_json, verbose)
    configure_logging(settings.log_level)
    configure_audit_logging(
        log_level=settings.log_level,
        json_format=settings.audit_json,
        service_name=SERVICE_NAME,
    )

    desired = _load_state(state_path)

    typer.echo(f"Syncing to: {settings.base_url}")
    typer.echo(f"State: {_describe_state(desired)}")

    try:
        result = asyncio.run(
            _async_sync(
                settings=settings,
                desired=desired,
                auto_remove=not no_auto_remove,
                dry_run=dry_run,
            )
        )
    except PlanError as e:
        typer.secho(f"Planning failed: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except FatalError as e:
        typer.secho(f"Fatal error, run aborted: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)
    except ApiError as e:
        typer.secho(f"API error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    if result is None:
        return

    typer.echo("\n" + result.summary())

    if not result.success:
        raise typer.Exit(1)


async def _async_sync(
    settings: ProvisionSettings,
    desired: DesiredState,
    auto_remove: bool,
    dry_run: bool,
) -> SyncResult | None:
    """Run the async sync operation. Returns None if nothing was applied."""
    async with IdmAdminClient(settings) as client:
        await client.authenticate()

        typer.echo("Fetching current state...")
        current = await fetch_current_state(client, settings.tracking_group)
        typer.echo(_describe_current(current))

        plan = compute_sync_plan(
            desired,
            current,
            tracking_group=settings.tracking_group,
            auto_remove=auto_remove,
            managed_oauth2_prefix=settings.managed_oauth2_prefix,
        )

        typer.echo("\n" + plan.summary())

        if dry_run:
            typer.secho("\n[DRY RUN] No changes applied", fg=typer.colors.YELLOW)
            return None

        if not plan.operations and not plan.adopted:
            return None

        typer.echo("\nApplying changes...")
        return await apply_sync_plan(
            client,
            plan,
            current,
            tracking_group=settings.tracking_group,
            max_workers=settings.max_workers,
            audit=AuditLogger(),
        )


@provision_app.command("validate")
def validate(
    state_path: StateOption,
    verbose: VerboseOption = False,
) -> None:
    """Validate a desired-state document without contacting the directory.

    Example:
        idm-provision validate --state state.json
    """
    configure_logging("DEBUG" if verbose else "INFO")

    desired = _load_state(state_path)
    typer.secho(f"Valid: {_describe_state(desired)}", fg=typer.colors.GREEN)


@provision_app.command("status")
def status(
    url: UrlOption = None,
    accept_invalid_certs: InsecureOption = False,
    verbose: VerboseOption = False,
) -> None:
    """Show the entities currently in the directory and which ones are tracked.

    Example:
        idm-provision status --url https://idm.example.com
    """
    settings = _build_settings(url, accept_invalid_certs, verbose=verbose)
    configure_logging(settings.log_level)

    try:
        current = asyncio.run(_async_status(settings))
    except ApiError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1)

    typer.echo(_describe_current(current))
    for label, entities in (
        ("Groups", current.groups),
        ("Persons", current.persons),
        ("OAuth2 resource servers", current.oauth2),
    ):
        typer.echo(f"\n{label}:")
        for name in sorted(entities):
            marker = "*" if name in current.tracked else " "
            typer.echo(f"  {marker} {name}")

    if not current.tracking_group_exists:
        typer.secho(
            f"\nTracking group {settings.tracking_group} does not exist yet",
            fg=typer.colors.YELLOW,
        )


async def _async_status(settings: ProvisionSettings) -> CurrentState:
    async with IdmAdminClient(settings) as client:
        await client.authenticate()
        return await fetch_current_state(client, settings.tracking_group)
