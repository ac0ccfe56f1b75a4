"""chatmemory chunks — list the stored chunks of one conversation.

  chatmemory chunks room-42
  chatmemory chunks room-42 --after 2024-05-01 --limit 20
"""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from chatmemory.cli._common import open_app
from chatmemory.cli.errors import warn_no_embeddings

console = Console()

_PREVIEW_CHARS = 60


def chunks_cmd(
    context_id: Annotated[str, typer.Argument(help="Conversation context id.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the database (default: storage.db_path)."),
    ] = None,
    after: Annotated[
        datetime | None,
        typer.Option("--after", help="Only chunks starting at or after this time (UTC)."),
    ] = None,
    before: Annotated[
        datetime | None,
        typer.Option("--before", help="Only chunks ending at or before this time (UTC)."),
    ] = None,
    limit: Annotated[
        int | None,
        typer.Option("--limit", "-n", min=1, help="Show at most this many chunks."),
    ] = None,
) -> None:
    """List the chunks of CONTEXT_ID in index order."""
    with open_app(db) as app:
        records = app.store.get_by_context_id(context_id, after=after, before=before, limit=limit)

    if not records:
        if after is None and before is None:
            console.print(warn_no_embeddings(context_id))
        else:
            console.print(f"[dim]No chunks of '{context_id}' in that time range.[/]")
        return

    table = Table(title=f"Chunks of {context_id}", show_header=True, header_style="bold")
    table.add_column("Index", justify="right")
    table.add_column("Span")
    table.add_column("Messages", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Preview", overflow="ellipsis", no_wrap=True)
    for record in records:
        first_line = record.chunk_text.splitlines()[0] if record.chunk_text else ""
        table.add_row(
            str(record.chunk_index),
            f"{record.timestamp_start:%Y-%m-%d %H:%M} → {record.timestamp_end:%H:%M}",
            str(len(record.message_ids)),
            str(record.metadata.get("token_estimate", "")),
            first_line[:_PREVIEW_CHARS],
        )
    console.print(table)
