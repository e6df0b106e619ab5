"""Run scheduled batch reconciliation until interrupted."""

from __future__ import annotations

import signal

import click
import structlog
from rich.console import Console

from depot_mirror.core.errors import DepotMirrorError
from depot_mirror.services import Services

logger = structlog.get_logger()


@click.command("serve")
@click.option("--run-now", is_flag=True, help="Run a batch immediately instead of waiting")
@click.pass_context
def serve(ctx: click.Context, run_now: bool) -> None:
    """Reconcile the catalog on a fixed interval.

    The first batch runs shortly after start, then every configured
    interval. SIGINT or SIGTERM stops waiting requests between attempts and
    shuts the scheduler down.
    """
    console: Console = ctx.obj["console"]
    services: Services = ctx.obj["services"]

    try:
        scheduler = services.scheduler
    except DepotMirrorError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise click.Abort() from e

    def _stop(signum, frame):
        logger.info("shutdown_requested", signal=signum)
        services.cancel_event.set()

    signal.signal(signal.SIGTERM, _stop)

    scheduler.start()
    console.print(f"[green]Scheduler running[/green], next batch at {scheduler.next_run_time}")

    try:
        if run_now:
            scheduler.run_batch()
        while not services.cancel_event.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("shutdown_requested", signal="SIGINT")
    finally:
        scheduler.shutdown()
        console.print("[yellow]Scheduler stopped[/yellow]")
