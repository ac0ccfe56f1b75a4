"""Forward-only migration runner for the chatmemory schema.

Timestamps are stored as fixed-width ISO-8601 UTC text (see
chatmemory.db.models.to_db_time) so lexical order equals time order.
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS messages (
    message_id       TEXT PRIMARY KEY,
    context_id       TEXT NOT NULL,
    context_type     TEXT NOT NULL DEFAULT 'private'
                     CHECK (context_type IN ('group', 'private')),
    direction        TEXT NOT NULL DEFAULT 'incoming'
                     CHECK (direction IN ('incoming', 'outgoing')),
    sender           TEXT NOT NULL DEFAULT '',
    content          TEXT,
    media_type       TEXT,
    media_url        TEXT,
    is_bot_command   INTEGER NOT NULL DEFAULT 0,
    is_admin_command INTEGER NOT NULL DEFAULT 0,
    is_deleted       INTEGER NOT NULL DEFAULT 0,
    metadata         TEXT NOT NULL DEFAULT '{}',
    created_at       TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_context_created
    ON messages(context_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);

CREATE TABLE IF NOT EXISTS conversation_chunks (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    context_id       TEXT NOT NULL,
    context_type     TEXT NOT NULL DEFAULT 'private'
                     CHECK (context_type IN ('group', 'private')),
    chunk_text       TEXT NOT NULL,
    embedding        BLOB NOT NULL,
    message_ids      TEXT NOT NULL DEFAULT '[]',
    chunk_index      INTEGER NOT NULL,
    timestamp_start  TEXT NOT NULL,
    timestamp_end    TEXT NOT NULL,
    metadata         TEXT NOT NULL DEFAULT '{}',
    created_at       DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (context_id, chunk_index)
);

CREATE INDEX IF NOT EXISTS idx_chunks_context ON conversation_chunks(context_id);
CREATE INDEX IF NOT EXISTS idx_chunks_timestamp_end ON conversation_chunks(timestamp_end);

-- High-water mark per context; survives chunk deletion so indices never repeat.
CREATE TABLE IF NOT EXISTS chunk_index_marks (
    context_id       TEXT PRIMARY KEY,
    max_chunk_index  INTEGER NOT NULL
);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
