"""Reconcile titles against the upstream catalog."""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from depot_mirror.core.config import AppConfig
from depot_mirror.core.errors import DepotMirrorError, NotFoundError
from depot_mirror.core.types import SyncOutcome, SyncStatus
from depot_mirror.services import Services

STATUS_STYLES = {
    SyncStatus.UPDATED: "green",
    SyncStatus.UP_TO_DATE: "cyan",
    SyncStatus.DRIFTED: "yellow",
    SyncStatus.UNAVAILABLE: "yellow",
    SyncStatus.FAILED: "red",
    SyncStatus.CANCELLED: "dim",
}


def _get_context_objects(ctx: click.Context) -> tuple[AppConfig, Console, bool, bool]:
    """Extract context objects from Click context."""
    config = ctx.obj["config"]
    console = ctx.obj["console"]
    verbose = ctx.obj.get("verbose", False)
    debug = ctx.obj.get("debug", False)
    return config, console, verbose, debug


def _output_json(data: Any, console: Console) -> None:
    """Output data as JSON."""
    print(json.dumps(data, indent=2, default=str))


def _print_outcome(outcome: SyncOutcome, console: Console, verbose: bool) -> None:
    """Render one title outcome."""
    style = STATUS_STYLES.get(outcome.status, "white")
    line = f"{outcome.title_id}: [{style}]{outcome.status.value}[/{style}]"
    if outcome.reason:
        line += f" ({outcome.reason})"
    console.print(line)

    depots = outcome.updated_depots or outcome.pending_depots
    if depots:
        label = "Updated" if outcome.updated_depots else "Pending"
        table = Table(title=f"{label} Depots", show_header=True)
        table.add_column("Depot", style="cyan")
        table.add_column("Manifest", style="green")
        for depot_id, manifest_id in sorted(depots.items()):
            table.add_row(depot_id, manifest_id)
        console.print(table)

    if outcome.added_dlc:
        console.print(f"Added DLC: {', '.join(str(d) for d in outcome.added_dlc)}")
    if outcome.commit_sha:
        console.print(f"Commit: [magenta]{outcome.commit_sha}[/magenta]")
    if verbose and outcome.files:
        console.print(f"Files: {', '.join(outcome.files)}")


@click.group("sync", short_help="Reconcile titles.")
def sync_group() -> None:
    """Reconcile titles against the upstream catalog.

    A title is compared with its last confirmed state; depots whose public
    manifest changed are written to the title's branch in one commit and
    only then recorded locally.
    """
    pass


@sync_group.command("title")
@click.argument("app_id", type=click.IntRange(min=1))
@click.pass_context
def sync_title(ctx: click.Context, app_id: int) -> None:
    """Reconcile a single title now."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        outcome = services.scheduler.run_one(str(app_id))
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json(outcome.model_dump(mode="json"), console)
    else:
        _print_outcome(outcome, console, verbose)

    if not outcome.ok:
        ctx.exit(1)


@sync_group.command("batch")
@click.pass_context
def sync_batch(ctx: click.Context) -> None:
    """Reconcile every tracked title once."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        summary = services.scheduler.run_batch()
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if summary is None:
        console.print("[yellow]A batch is already running[/yellow]")
        raise click.Abort()

    if config.output_format == "json":
        data = summary.model_dump(mode="json")
        data["failed"] = summary.failed
        _output_json(data, console)
        return

    console.print(f"[bold]Batch {summary.batch_id}[/bold]")
    console.print(f"Titles: {summary.total}")
    console.print(f"Updated: [green]{summary.updated}[/green]")
    console.print(f"Up to date: [cyan]{summary.up_to_date}[/cyan]")
    console.print(f"Failed: [red]{summary.failed}[/red]")
    if summary.cancelled:
        console.print("[yellow]Batch was cancelled[/yellow]")

    if summary.failures:
        table = Table(title="Failures", show_header=True)
        table.add_column("AppID", style="cyan")
        table.add_column("Status", style="red")
        table.add_column("Reason")
        for outcome in summary.failures:
            table.add_row(outcome.title_id, outcome.status.value, outcome.reason)
        console.print(table)


@sync_group.command("check")
@click.argument("app_id", type=click.IntRange(min=1))
@click.pass_context
def check_title(ctx: click.Context, app_id: int) -> None:
    """Report pending depot changes without writing anything."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        outcome = services.synchronizer.check(str(app_id))
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json(outcome.model_dump(mode="json"), console)
    else:
        _print_outcome(outcome, console, verbose)


@sync_group.command("add-dlc")
@click.argument("app_id", type=click.IntRange(min=1))
@click.pass_context
def add_dlc(ctx: click.Context, app_id: int) -> None:
    """Register upstream DLC missing from a title's script."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        outcome = services.synchronizer.add_missing_dlc(str(app_id))
    except NotFoundError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise click.Abort() from e
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json(outcome.model_dump(mode="json"), console)
    else:
        _print_outcome(outcome, console, verbose)

    if not outcome.ok:
        ctx.exit(1)
