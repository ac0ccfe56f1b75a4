"""chatmemory status — store overview, or detailed stats for one context."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from chatmemory.app import App
from chatmemory.cli._common import open_app
from chatmemory.cli.errors import warn_no_embeddings

console = Console()


def status_cmd(
    context_id: Annotated[
        str | None,
        typer.Argument(help="Show detailed stats for this context."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the database (default: storage.db_path)."),
    ] = None,
) -> None:
    """Show embedding statistics."""
    with open_app(db) as app:
        if context_id is None:
            _show_overview(app)
        else:
            _show_context(app, context_id)


def _show_overview(app: App) -> None:
    cfg = app.service.get_config()
    lines = [
        f"  Messages:         {app.history.count_messages()}",
        f"  Chunks:           {app.store.count()}",
        f"  Embedding model:  {cfg.embedding_model}",
        f"  Chunking:         {cfg.chunk_size} messages, {cfg.chunk_overlap} overlap",
        f"  Retrieval:        top {cfg.top_k}, min similarity {cfg.min_similarity}",
    ]
    console.print(Panel("\n".join(lines), title="[bold]chatmemory[/]", expand=False))

    contexts = app.store.list_contexts()
    if not contexts:
        console.print("[dim]No embedded contexts yet.[/]")
        return

    table = Table(title="Contexts", show_header=True, header_style="bold")
    table.add_column("Context", style="bold")
    table.add_column("Chunks", justify="right")
    table.add_column("Latest index", justify="right")
    for ctx, chunks, latest in contexts:
        table.add_row(ctx, str(chunks), str(latest))
    console.print(table)


def _show_context(app: App, context_id: str) -> None:
    if not app.service.has_embeddings(context_id):
        console.print(warn_no_embeddings(context_id))
        return

    stats = app.service.get_stats(context_id)
    lines = [
        f"  Chunks:           {stats.total_chunks}",
        f"  Messages covered: {stats.total_messages}",
        f"  Avg chunk size:   {stats.avg_chunk_size:.1f} messages",
        f"  Earliest:         {stats.earliest_timestamp:%Y-%m-%d %H:%M:%S}",
        f"  Latest:           {stats.latest_timestamp:%Y-%m-%d %H:%M:%S}",
        f"  Latest index:     {app.store.get_latest_chunk_index(context_id)}",
        f"  History messages: {app.history.count_messages(context_id)}",
        f"  Suggested chunk:  {app.service.suggest_chunk_size(context_id)} messages "
        f"(configured {app.service.get_config().chunk_size})",
    ]
    console.print(Panel("\n".join(lines), title=f"[bold]{context_id}[/]", expand=False))
