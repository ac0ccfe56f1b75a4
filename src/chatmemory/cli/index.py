"""chatmemory index / rebuild / delete — per-context embedding maintenance.

Usage:
  chatmemory index room-42            embed messages newer than the last chunk
  chatmemory rebuild room-42 --yes    delete and re-embed the whole history
  chatmemory delete room-42 --yes     remove all chunks of a context
  chatmemory delete --user alice -y   remove a user's private-chat chunks (data removal)
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from chatmemory.cli._common import open_app
from chatmemory.cli.errors import err_context_busy, err_embedding_failed, err_store_failed
from chatmemory.errors import ConcurrentProcessingError, ProviderError, StoreError

console = Console()

_DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the database (default: storage.db_path)."),
]
_YesOption = Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")]


def index_cmd(
    context_id: Annotated[str, typer.Argument(help="Conversation context id.")],
    db: _DbOption = None,
) -> None:
    """Embed the context's messages that are not indexed yet."""
    with open_app(db, needs_embeddings=True) as app:
        try:
            count = app.worker.process_context_now(context_id)
        except ConcurrentProcessingError:
            console.print(err_context_busy(context_id))
            raise typer.Exit(1)
        except ProviderError as exc:
            console.print(err_embedding_failed(str(exc)))
            raise typer.Exit(1)
        except StoreError as exc:
            console.print(err_store_failed(str(exc)))
            raise typer.Exit(1)
        total = app.store.count(context_id)

    if count:
        console.print(f"[green]✓[/] Embedded {count} messages for '{context_id}' ({total} chunks)")
    else:
        console.print(f"[dim]'{context_id}' is up to date ({total} chunks).[/]")


def rebuild_cmd(
    context_id: Annotated[str, typer.Argument(help="Conversation context id.")],
    db: _DbOption = None,
    yes: _YesOption = False,
) -> None:
    """Delete and re-embed every chunk of a context (re-embeds the full history)."""
    with open_app(db, needs_embeddings=True) as app:
        existing = app.store.count(context_id)
        if not yes:
            console.print(
                f"\nRebuild [bold]{context_id}[/]: {existing} chunks will be deleted "
                "and the full history re-embedded."
            )
            if not typer.confirm("Continue?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)
        try:
            stored = app.service.rebuild_embeddings(context_id)
        except ProviderError as exc:
            console.print(err_embedding_failed(str(exc)))
            raise typer.Exit(1)
        except StoreError as exc:
            console.print(err_store_failed(str(exc)))
            raise typer.Exit(1)

    console.print(f"[green]✓[/] Rebuilt '{context_id}': {existing} → {stored} chunks")


def delete_cmd(
    context_id: Annotated[
        str | None,
        typer.Argument(help="Conversation context id."),
    ] = None,
    user: Annotated[
        str | None,
        typer.Option("--user", "-u", help="Delete the private-chat chunks of this user instead."),
    ] = None,
    db: _DbOption = None,
    yes: _YesOption = False,
) -> None:
    """Delete all stored chunks of a context, or of a user's private chat. Message history is kept."""
    if (context_id is None) == (user is None):
        console.print(
            "[red]Error:[/] Pass either a context id or --user, not both.\n"
            "  Run:  chatmemory delete room-42   or   chatmemory delete --user alice"
        )
        raise typer.Exit(1)

    with open_app(db) as app:
        if user is not None:
            if not yes:
                console.print(f"\nDelete the private-chat chunks of user [bold]{user}[/]")
                if not typer.confirm("Confirm deletion?", default=False):
                    console.print("[dim]Cancelled.[/]")
                    raise typer.Exit(0)
            try:
                deleted = app.service.delete_user_embeddings(user)
            except StoreError as exc:
                console.print(err_store_failed(str(exc)))
                raise typer.Exit(1)
            console.print(f"[green]✓[/] Deleted {deleted} private chunks for user '{user}'")
            return

        existing = app.store.count(context_id)
        if existing == 0:
            console.print(f"[dim]No chunks stored for '{context_id}'.[/]")
            raise typer.Exit(0)
        if not yes:
            console.print(f"\nDelete {existing} chunks of [bold]{context_id}[/]")
            if not typer.confirm("Confirm deletion?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)
        try:
            deleted = app.service.delete_embeddings(context_id)
        except StoreError as exc:
            console.print(err_store_failed(str(exc)))
            raise typer.Exit(1)

    console.print(f"[green]✓[/] Deleted {deleted} chunks for '{context_id}'")
