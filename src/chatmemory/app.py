"""Composition root: builds the store, history, service, and worker once.

Host applications and the CLI call build_app() and pass the returned
components by reference; nothing in chatmemory is a module-level singleton.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

from rich.logging import RichHandler

from chatmemory.config import ChatMemoryConfig
from chatmemory.db.chunk_store import ChunkStore
from chatmemory.db.connection import Database
from chatmemory.db.history import MessageHistory
from chatmemory.db.schema import initialize
from chatmemory.ports import EmbeddingProvider
from chatmemory.rag.service import ConversationIndexService
from chatmemory.worker.embedding_worker import EmbeddingWorker, TickerFactory, ThreadTicker


@dataclass
class App:
    conn: sqlite3.Connection
    store: ChunkStore
    history: MessageHistory
    service: ConversationIndexService
    worker: EmbeddingWorker

    def close(self) -> None:
        """Stop the worker, let a running cycle finish, then close the database."""
        self.worker.stop()
        self.worker.wait_idle()
        self.conn.close()

    def __enter__(self) -> App:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def build_app(
    config: ChatMemoryConfig,
    db_path: Path | str | None = None,
    *,
    embedder: EmbeddingProvider | None = None,
    ticker_factory: TickerFactory = ThreadTicker,
) -> App:
    """Open the database and wire every component.

    Args:
        config: Loaded configuration.
        db_path: Overrides ``config.storage.db_path``.
        embedder: Overrides the litellm embedder (tests, custom providers).
        ticker_factory: Scheduling primitive handed to the worker.
    """
    path = Path(db_path) if db_path is not None else Path(config.storage.db_path)
    conn = Database(path).connect()
    initialize(conn)

    lock = threading.RLock()
    store = ChunkStore(conn, dimensions=config.storage.dimensions, lock=lock)
    history = MessageHistory(conn, lock=lock)
    service = ConversationIndexService(store, history, config.rag, embedder)
    worker = EmbeddingWorker(service, store, config.worker, ticker_factory=ticker_factory)
    return App(conn=conn, store=store, history=history, service=service, worker=worker)


def configure_logging(level: str = "INFO") -> None:
    """Route chatmemory logs through a rich handler at *level*."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # litellm and httpx are chatty at INFO
    for noisy in ("LiteLLM", "litellm", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
