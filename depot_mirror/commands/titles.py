"""Manage the catalog of tracked titles."""

from __future__ import annotations

import json
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from depot_mirror.core.config import AppConfig
from depot_mirror.core.errors import DepotMirrorError
from depot_mirror.services import Services


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


@click.group("titles", short_help="Manage tracked titles.")
def titles_group() -> None:
    """Manage the catalog of tracked titles.

    Tracked titles are reconciled by every batch run. Titles can be added
    one by one or imported from the branches already present in the
    artifact repository.
    """
    pass


@titles_group.command("add")
@click.argument("app_ids", nargs=-1, required=True, type=click.IntRange(min=1))
@click.option("--name", "-n", help="Display name (single title only)")
@click.pass_context
def add_titles(ctx: click.Context, app_ids: tuple[int, ...], name: str | None) -> None:
    """Track one or more titles."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    if name and len(app_ids) > 1:
        raise click.BadParameter("--name can only be used with a single AppID")

    known = set(services.state.list_title_ids())
    added = []
    for app_id in app_ids:
        services.state.track(str(app_id), name=name)
        if str(app_id) not in known:
            added.append(str(app_id))

    if config.output_format == "json":
        _output_json({"added": added, "already_tracked": len(app_ids) - len(added)}, console)
        return

    for app_id in app_ids:
        marker = "[green]added[/green]" if str(app_id) in added else "[dim]already tracked[/dim]"
        console.print(f"{app_id}: {marker}")


@titles_group.command("remove")
@click.argument("app_id", type=click.IntRange(min=1))
@click.pass_context
def remove_title(ctx: click.Context, app_id: int) -> None:
    """Stop tracking a title. Its branch is left untouched."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    if not services.state.untrack(str(app_id)):
        console.print(f"[yellow]{app_id} is not tracked[/yellow]")
        raise click.Abort()
    console.print(f"[green]Removed {app_id}[/green]")


@titles_group.command("list")
@click.option("--limit", "-l", type=int, default=50, help="Maximum number of titles to display")
@click.option("--all", "-a", "show_all", is_flag=True, help="Show all titles (overrides limit)")
@click.pass_context
def list_titles(ctx: click.Context, limit: int, show_all: bool) -> None:
    """List tracked titles with their last confirmed state."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    records = services.state.records()
    shown = records if show_all else records[:limit]

    if config.output_format == "json":
        _output_json([r.model_dump(mode="json") for r in shown], console)
        return

    if not records:
        console.print("[yellow]No titles tracked[/yellow]")
        return

    table = Table(title="Tracked Titles", show_header=True)
    table.add_column("AppID", style="cyan")
    table.add_column("Name")
    table.add_column("Depots", justify="right", style="green")
    table.add_column("Build", style="yellow")
    table.add_column("Last Synced", style="magenta")
    table.add_column("Auto", justify="center")

    for record in shown:
        table.add_row(
            record.title_id,
            record.name or "",
            str(len(record.depot_manifests)),
            record.build_id or "N/A",
            record.last_synced_at.strftime("%Y-%m-%d %H:%M") if record.last_synced_at else "never",
            "yes" if record.auto_updated else "",
        )

    console.print(table)
    if len(shown) < len(records):
        console.print(f"[dim]Showing {len(shown)} of {len(records)} titles[/dim]")


@titles_group.command("stats")
@click.pass_context
def titles_stats(ctx: click.Context) -> None:
    """Show catalog statistics."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    stats = services.state.statistics()

    if config.output_format == "json":
        _output_json(stats, console)
        return

    console.print("[bold]Catalog Statistics[/bold]\n")
    console.print(f"Tracked titles: [green]{stats['total_titles']}[/green]")
    console.print(f"Auto-updated: [cyan]{stats['auto_updated']}[/cyan]")
    console.print(f"Synced in last 24h: [yellow]{stats['recently_synced']}[/yellow]")
    console.print(f"With manifests: {stats['with_manifests']} ({stats['coverage_percent']}%)")


@titles_group.command("import-branches")
@click.pass_context
def import_branches(ctx: click.Context) -> None:
    """Track every title that already has a branch in the repository."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        added = services.import_branches()
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json({"added": added}, console)
        return

    console.print(f"[green]Imported {len(added)} new titles[/green]")
    if verbose and added:
        console.print(", ".join(added))
