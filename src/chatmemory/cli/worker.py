"""chatmemory worker — run the background embedding worker in the foreground.

  chatmemory worker          cycle every worker.interval_seconds until Ctrl-C
  chatmemory worker --once   run a single cycle and print its stats
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from chatmemory.cli._common import open_app
from chatmemory.worker.embedding_worker import WorkerStats

console = Console()


def worker_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the database (default: storage.db_path)."),
    ] = None,
    once: Annotated[
        bool,
        typer.Option("--once", help="Run a single cycle and exit."),
    ] = False,
) -> None:
    """Index active conversations periodically."""
    with open_app(db, needs_embeddings=True) as app:
        if once:
            app.worker.run_worker_cycle()
            _print_stats(app.worker.get_stats())
            if app.worker.get_stats().failed_runs:
                raise typer.Exit(1)
            return

        cfg = app.worker.get_config()
        if not cfg.enabled:
            console.print(
                "[yellow]Worker is disabled[/] (worker.enabled: false).\n"
                "  Enable it in chatmemory.yaml or set CHATMEMORY_WORKER_ENABLED=1."
            )
            raise typer.Exit(1)

        console.print(
            f"[bold]Embedding worker running[/] — every {cfg.interval_seconds:g}s, "
            f"batch {cfg.batch_size}. Press Ctrl-C to stop."
        )
        app.worker.start()
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            console.print("\n[dim]Stopping; waiting for the running cycle…[/]")
        finally:
            app.worker.stop()
        _print_stats(app.worker.get_stats())


def _print_stats(stats: WorkerStats) -> None:
    table = Table(show_header=False, box=None, padding=(0, 1))
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Cycles", str(stats.total_runs))
    table.add_row("Successful", str(stats.successful_runs))
    table.add_row("Failed", str(stats.failed_runs))
    table.add_row("Contexts processed", str(stats.contexts_processed))
    table.add_row("Messages embedded", str(stats.messages_embedded))
    if stats.last_error:
        table.add_row("Last error", f"[red]{stats.last_error}[/]")
    console.print(table)
