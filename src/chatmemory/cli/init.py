"""chatmemory init — create the database and project config.

Creates:
  .chatmemory.db     — empty store with schema (messages + conversation chunks)
  chatmemory.yaml    — project config with documented defaults
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from chatmemory.config import write_project_config
from chatmemory.db.connection import Database
from chatmemory.db.schema import initialize

console = Console()

_DEFAULT_PROJECT_DIR = Path(".")
_DB_NAME = ".chatmemory.db"


def init_cmd(
    project_dir: Annotated[
        Path,
        typer.Argument(help="Directory to initialize. Defaults to current directory."),
    ] = _DEFAULT_PROJECT_DIR,
) -> None:
    """Initialize a chatmemory database and chatmemory.yaml."""
    project_dir = project_dir.resolve()
    project_dir.mkdir(parents=True, exist_ok=True)

    db_path = project_dir / _DB_NAME
    existed = db_path.exists()
    with Database(db_path) as conn:
        initialize(conn)
    if existed:
        console.print(f"  [yellow]⚠[/] {_DB_NAME} already exists — schema checked, data preserved")
    else:
        console.print(f"  [green]✓[/] {_DB_NAME}")

    cfg_path = write_project_config(project_dir)
    console.print(f"  [green]✓[/] {cfg_path.name}")

    console.print(f"\n[bold green]✓ chatmemory initialized in {project_dir}[/]")
    console.print("\nNext steps:")
    console.print("  1. export OPENAI_API_KEY=sk-...")
    console.print("  2. chatmemory import --file messages.jsonl   (load chat history)")
    console.print("  3. chatmemory index <context-id>             (embed a conversation)")
    console.print("  4. chatmemory search <context-id> \"query\"    (retrieve context)")
