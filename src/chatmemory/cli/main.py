"""chatmemory CLI entry point."""

from __future__ import annotations

import importlib.metadata
import os
from typing import Annotated

import typer

from chatmemory.app import configure_logging
from chatmemory.cli.chunks import chunks_cmd
from chatmemory.cli.importer import import_cmd
from chatmemory.cli.index import delete_cmd, index_cmd, rebuild_cmd
from chatmemory.cli.init import init_cmd
from chatmemory.cli.search import search_cmd
from chatmemory.cli.status import status_cmd
from chatmemory.cli.worker import worker_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("chatmemory")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"chatmemory {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="chatmemory",
    help=(
        "chatmemory — long-term memory for chat conversations.\n\n"
        "  chatmemory index   Embed new messages of a conversation.\n"
        "  chatmemory search  Retrieve the most relevant earlier context."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log at DEBUG level."),
    ] = False,
) -> None:
    """chatmemory — long-term memory for chat conversations."""
    level = "DEBUG" if verbose else os.environ.get("CHATMEMORY_LOG_LEVEL", "WARNING")
    configure_logging(level)


app.command("init")(init_cmd)
app.command("import")(import_cmd)
app.command("index")(index_cmd)
app.command("rebuild")(rebuild_cmd)
app.command("delete")(delete_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("chunks")(chunks_cmd)
app.command("worker")(worker_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed chatmemory version."""
    typer.echo(f"chatmemory {_installed_version()}")


if __name__ == "__main__":
    app()
