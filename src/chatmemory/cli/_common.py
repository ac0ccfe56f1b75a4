"""Helpers shared by the CLI commands: config loading and app construction."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from chatmemory.app import App, build_app
from chatmemory.cli.errors import err_invalid_config, err_no_api_key, err_no_db
from chatmemory.config import ChatMemoryConfig, ConfigError, load_config
from chatmemory.rag.llm_client import validate_api_key

console = Console()


def load_cli_config() -> ChatMemoryConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_invalid_config(str(exc)))
        raise typer.Exit(1)


def resolve_db(db: Path | None, cfg: ChatMemoryConfig) -> Path:
    return db if db is not None else Path(cfg.storage.db_path)


def open_app(db: Path | None, *, needs_embeddings: bool = False) -> App:
    """Load config, check prerequisites, and build the app.

    Exits with code 1 (after printing an actionable message) when the
    database is missing or the embedding provider has no API key.
    """
    cfg = load_cli_config()
    path = resolve_db(db, cfg)
    if not path.exists():
        console.print(err_no_db(str(path)))
        raise typer.Exit(1)

    if needs_embeddings:
        try:
            validate_api_key(cfg.rag.embedding_model)
        except EnvironmentError:
            model = cfg.rag.embedding_model
            provider = model.split("/")[0] if "/" in model else "openai"
            console.print(err_no_api_key(provider))
            raise typer.Exit(1)

    return build_app(cfg, path)
