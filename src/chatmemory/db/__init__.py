"""chatmemory database layer."""

from chatmemory.db.chunk_store import ChunkStore
from chatmemory.db.connection import Database
from chatmemory.db.history import MessageHistory
from chatmemory.db.migrations import MIGRATIONS, run_migrations
from chatmemory.db.schema import initialize

__all__ = [
    "ChunkStore",
    "Database",
    "MessageHistory",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
]
