"""chatmemory import — load chat history from a JSON-lines file.

One message per line:

  {"message_id": "m1", "context_id": "room-42", "created_at": "2024-05-01T10:00:00+00:00",
   "direction": "incoming", "sender": "alice", "content": "hello"}

Messages whose id is already stored are skipped, so re-importing a file is safe.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from chatmemory.cli._common import open_app
from chatmemory.cli.errors import err_bad_import_line, err_file_not_found, err_store_failed
from chatmemory.db.models import Message
from chatmemory.errors import StoreError

console = Console()


def import_cmd(
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="JSON-lines file with one message per line."),
    ],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the database (default: storage.db_path)."),
    ] = None,
) -> None:
    """Import chat messages into the history store."""
    if not file.exists():
        console.print(err_file_not_found(str(file)))
        raise typer.Exit(1)

    messages = _read_messages(file)

    with open_app(db) as app:
        try:
            inserted = app.history.add_messages(messages)
        except StoreError as exc:
            console.print(err_store_failed(str(exc)))
            raise typer.Exit(1)

    contexts = len({m.context_id for m in messages})
    skipped = len(messages) - inserted
    console.print(
        f"[green]✓[/] Imported {inserted} messages across {contexts} contexts"
        + (f" [dim]({skipped} already present)[/]" if skipped else "")
    )


def _read_messages(path: Path) -> list[Message]:
    messages: list[Message] = []
    with path.open(encoding="utf-8") as fh:
        for line_no, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            try:
                data = json.loads(line)
                if not isinstance(data, dict):
                    raise ValueError("expected a JSON object")
                messages.append(Message.from_dict(data))
            except ValueError as exc:
                console.print(err_bad_import_line(str(path), line_no, str(exc)))
                raise typer.Exit(1)
    return messages
