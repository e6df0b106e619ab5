"""Browse the files on a title branch."""

from __future__ import annotations

import json
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from depot_mirror.core.config import AppConfig
from depot_mirror.core.depots import describe_depots
from depot_mirror.core.errors import DepotMirrorError, NotFoundError
from depot_mirror.core.utils import format_size
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


@click.group("files", short_help="Browse title branches.")
def files_group() -> None:
    """Browse the files on a title branch."""
    pass


@files_group.command("list")
@click.argument("app_id", type=click.IntRange(min=1))
@click.pass_context
def list_files(ctx: click.Context, app_id: int) -> None:
    """List files on a title branch."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        files = services.repository.list_files(str(app_id))
    except NotFoundError as e:
        console.print(f"[yellow]No branch for {app_id}[/yellow]")
        raise click.Abort() from e
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json([f.model_dump(mode="json") for f in files], console)
        return

    table = Table(title=f"Files on {app_id}", show_header=True)
    table.add_column("Name", style="cyan")
    table.add_column("Type", style="yellow")
    table.add_column("Size", justify="right", style="green")
    for artifact in files:
        table.add_row(artifact.name, artifact.type.value, format_size(artifact.size))
    console.print(table)


@files_group.command("show")
@click.argument("app_id", type=click.IntRange(min=1))
@click.argument("filename")
@click.option(
    "--output",
    "-o",
    "output_path",
    type=click.Path(path_type=Path),
    help="Write the file here instead of printing it",
)
@click.pass_context
def show_file(ctx: click.Context, app_id: int, filename: str, output_path: Path | None) -> None:
    """Print or save one file from a title branch."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        content = services.repository.read_file(str(app_id), filename)
    except NotFoundError as e:
        console.print(f"[yellow]{e}[/yellow]")
        raise click.Abort() from e
    except (DepotMirrorError, ValueError) as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if output_path:
        output_path.write_bytes(content)
        console.print(f"[green]Wrote {format_size(len(content))} to {output_path}[/green]")
        return

    try:
        sys.stdout.write(content.decode("utf-8"))
    except UnicodeDecodeError as e:
        console.print("[red]Binary file; use --output to save it[/red]")
        raise click.Abort() from e


@files_group.command("depots")
@click.argument("app_id", type=click.IntRange(min=1))
@click.pass_context
def list_depots(ctx: click.Context, app_id: int) -> None:
    """Show the depot table of a title branch."""
    config, console, verbose, debug = _get_context_objects(ctx)
    services: Services = ctx.obj["services"]

    try:
        summary = describe_depots(
            services.repository, str(app_id), config.upstream.release_track
        )
    except NotFoundError as e:
        console.print(f"[yellow]No branch for {app_id}[/yellow]")
        raise click.Abort() from e
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    if config.output_format == "json":
        _output_json(summary.model_dump(mode="json"), console)
        return

    table = Table(title=f"Depots of {app_id} ({summary.source})", show_header=True)
    table.add_column("Depot", style="cyan")
    table.add_column("Manifest", style="green")
    table.add_column("Size", justify="right")
    table.add_column("OS")
    table.add_column("Language")
    table.add_column("Shared From")
    table.add_column("Key", justify="center")

    for depot in summary.depots:
        table.add_row(
            depot.depot_id,
            depot.manifest_id or "[red]missing[/red]",
            format_size(depot.size),
            depot.oslist or "",
            depot.language or "",
            depot.shared_from_app or "",
            "yes" if depot.has_decryption_key else "",
        )
    console.print(table)

    console.print(
        f"{summary.depots_with_manifests}/{summary.total_depots} depots with manifests "
        f"({summary.completion_percent}%), {summary.shared_depots} shared"
    )
    if summary.missing_manifests:
        console.print(f"[yellow]Missing manifests: {', '.join(summary.missing_manifests)}[/yellow]")
