"""chatmemory rich error messages — actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from chatmemory.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "voyage": "VOYAGE_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_no_db(db_path: str = ".chatmemory.db") -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  chatmemory init"
    )


def err_invalid_config(detail: str) -> str:
    """chatmemory.yaml or a CHATMEMORY_* variable holds an invalid value."""
    return (
        f"[red]Error:[/] Invalid configuration: {detail}\n"
        "  Fix the value in chatmemory.yaml (or the CHATMEMORY_* environment variable)."
    )


def err_context_busy(context_id: str) -> str:
    """Manual indexing requested for a context that is already being indexed."""
    return (
        f"[red]Error:[/] Context '{context_id}' is already being processed.\n"
        "  Wait for the running job to finish, then retry:  "
        f"chatmemory index {context_id}"
    )


def err_embedding_failed(detail: str) -> str:
    """The embedding provider failed after retries."""
    return (
        f"[red]Error:[/] Embedding failed: {detail}\n"
        "  Check the provider status and rag.embedding_model, then retry.\n"
        "  Chunks stored before the failure are kept; retrying is safe."
    )


def err_store_failed(detail: str) -> str:
    """A database read or write failed."""
    return (
        f"[red]Error:[/] Database operation failed: {detail}\n"
        "  Check that the database file is writable and not locked by another process."
    )


def err_file_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Pass an existing JSON-lines file:  chatmemory import --file messages.jsonl"
    )


def err_bad_import_line(path: str, line_no: int, detail: str) -> str:
    """A JSON-lines record could not be parsed."""
    return (
        f"[red]Error:[/] {path}:{line_no}: {detail}\n"
        "  Each line must be a JSON object with message_id, context_id and created_at."
    )


def warn_no_embeddings(context_id: str) -> str:
    """Search or status requested for a context with no stored chunks."""
    return (
        f"[yellow]No embeddings for '{context_id}'.[/]\n"
        f"  Run:  chatmemory index {context_id}"
    )
