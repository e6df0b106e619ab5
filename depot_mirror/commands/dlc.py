"""DLC completeness for a title."""

from __future__ import annotations

import json

import click
from rich.console import Console
from rich.table import Table

from depot_mirror.core.config import AppConfig
from depot_mirror.core.errors import DepotMirrorError
from depot_mirror.core.types import DlcType
from depot_mirror.services import Services


@click.command("dlc")
@click.argument("app_id", type=click.IntRange(min=1))
@click.option("--refresh", "-r", is_flag=True, help="Ignore a cached analysis")
@click.option("--missing-only", "-m", is_flag=True, help="Only list untracked DLC")
@click.pass_context
def dlc(ctx: click.Context, app_id: int, refresh: bool, missing_only: bool) -> None:
    """Show which DLC of a title are tracked.

    Completion counts content DLC only; soundtracks, cosmetics and other
    extras are listed but do not lower it.
    """
    config: AppConfig = ctx.obj["config"]
    console: Console = ctx.obj["console"]
    services: Services = ctx.obj["services"]

    try:
        analysis = services.analyzer.analyze(str(app_id), use_cache=not refresh)
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        print(json.dumps(analysis.model_dump(mode="json"), indent=2))
        return

    console.print(f"[bold]DLC for {app_id}[/bold]\n")
    console.print(f"Total DLC: {analysis.total_dlc}")
    console.print(f"Content: {analysis.content_dlc_count}  Extras: {analysis.extra_dlc_count}")
    console.print(f"Tracked: [green]{analysis.tracked_dlc}[/green]  Missing: [red]{analysis.missing_dlc}[/red]")
    console.print(f"Content completion: [cyan]{analysis.completion_percent}%[/cyan]")

    rows = [d for d in analysis.dlc_list if not (missing_only and d.is_tracked)]
    if not rows:
        return

    table = Table(show_header=True)
    table.add_column("AppID", style="cyan")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Tracked", justify="center")
    table.add_column("Own Depot", justify="center")

    for info in rows:
        table.add_row(
            str(info.app_id),
            info.name,
            "[dim]extra[/dim]" if info.dlc_type == DlcType.EXTRA else "content",
            "[green]yes[/green]" if info.is_tracked else "[red]no[/red]",
            "yes" if info.has_own_depot else "",
        )
    console.print(table)
