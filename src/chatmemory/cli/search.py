"""chatmemory search — retrieve the most relevant chunks of a conversation."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from chatmemory.cli._common import open_app
from chatmemory.cli.errors import err_embedding_failed, warn_no_embeddings
from chatmemory.errors import ProviderError

console = Console()


def search_cmd(
    context_id: Annotated[str, typer.Argument(help="Conversation context id.")],
    query: Annotated[str, typer.Argument(help="What to look for.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the database (default: storage.db_path)."),
    ] = None,
    raw: Annotated[
        bool,
        typer.Option("--raw", help="Print the formatted context text only."),
    ] = False,
    after: Annotated[
        datetime | None,
        typer.Option("--after", help="Only chunks starting at or after this time (UTC)."),
    ] = None,
    before: Annotated[
        datetime | None,
        typer.Option("--before", help="Only chunks ending at or before this time (UTC)."),
    ] = None,
) -> None:
    """Show the chunks of CONTEXT_ID most similar to QUERY."""
    with open_app(db, needs_embeddings=True) as app:
        if not app.service.has_embeddings(context_id):
            console.print(warn_no_embeddings(context_id))
            raise typer.Exit(0)
        try:
            result = app.service.retrieve_relevant_context(
                context_id, query, after=after, before=before
            )
        except ProviderError as exc:
            console.print(err_embedding_failed(str(exc)))
            raise typer.Exit(1)

    if raw:
        typer.echo(result.context_text)
        return

    if result.is_empty:
        console.print("[dim]No relevant context above the similarity threshold.[/]")
        return

    for n, hit in enumerate(result.relevant_chunks, start=1):
        record = hit.record
        title = (
            f"[bold]#{n}[/] chunk {record.chunk_index}  "
            f"[green]{hit.similarity:.0%}[/]  "
            f"[dim]{record.timestamp_start:%Y-%m-%d %H:%M} → {record.timestamp_end:%Y-%m-%d %H:%M}[/]"
        )
        console.print(Panel(record.chunk_text, title=title, title_align="left", expand=False))

    console.print(
        f"{result.total_chunks} chunks, {len(result.message_ids)} messages, "
        f"avg similarity {result.avg_similarity:.2f}, {result.retrieval_time_ms:.0f} ms"
    )
