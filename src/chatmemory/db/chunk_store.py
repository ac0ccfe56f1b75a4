"""Chunk store: persisted conversation chunks, vectors, and index bookkeeping.

Single interface for chunk records, cosine similarity search (sqlite-vec
``vec_distance_cosine``), per-context statistics, deletion, and the
candidate-context query used by the embedding worker.

Similarity search is an exact scan scoped to one context; the per-context
keyspace is small enough that no ANN index is kept.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from chatmemory.db.models import (
    ChunkRecord,
    EmbeddingStats,
    SearchResult,
    from_db_time,
    to_db_time,
)
from chatmemory.db.vectors import decode_vector, encode_vector
from chatmemory.errors import StoreError

logger = logging.getLogger(__name__)

_RECORD_COLUMNS = (
    "id, context_id, context_type, chunk_text, embedding, message_ids, chunk_index, "
    "timestamp_start, timestamp_end, metadata, created_at"
)


class ChunkStore:
    """Data access layer for conversation chunk records.

    Wraps an open sqlite3.Connection (owned by the caller) and serializes all
    access through *lock* so the worker thread and foreground callers can
    share one connection.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        *,
        dimensions: int = 0,
        lock: threading.RLock | None = None,
    ) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see chatmemory.db.schema.initialize).
            dimensions: Expected embedding length; 0 disables the check.
            lock: Lock shared with other stores on the same connection.
        """
        self._conn = conn
        self._dimensions = dimensions
        self._lock = lock or threading.RLock()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"{action} failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, record: ChunkRecord) -> int:
        """Append *record* and raise the context's high-water mark.

        Returns:
            The new row id (also set on ``record.id``).

        Raises:
            StoreError: On any database failure, including a chunk index that
                already exists for the context.
        """
        try:
            blob = encode_vector(record.embedding, self._dimensions)
        except ValueError as exc:
            raise StoreError(f"create chunk failed: {exc}") from exc

        with self._transaction("create chunk") as conn:
            cur = conn.execute(
                """
                INSERT INTO conversation_chunks (
                    context_id, context_type, chunk_text, embedding, message_ids,
                    chunk_index, timestamp_start, timestamp_end, metadata
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.context_id,
                    record.context_type,
                    record.chunk_text,
                    blob,
                    json.dumps(record.message_ids),
                    record.chunk_index,
                    to_db_time(record.timestamp_start),
                    to_db_time(record.timestamp_end),
                    record.metadata_json,
                ),
            )
            conn.execute(
                """
                INSERT INTO chunk_index_marks (context_id, max_chunk_index)
                VALUES (?, ?)
                ON CONFLICT(context_id) DO UPDATE SET
                    max_chunk_index = MAX(max_chunk_index, excluded.max_chunk_index)
                """,
                (record.context_id, record.chunk_index),
            )
            conn.commit()

        record.id = cur.lastrowid
        logger.debug(
            f"[CHUNK_STORE] Stored chunk {record.chunk_index} for {record.context_id} "
            f"(id={record.id}, {len(record.message_ids)} messages)"
        )
        return record.id

    def delete_by_context_id(self, context_id: str) -> int:
        """Delete every chunk of *context_id*. The high-water mark is kept.

        Returns:
            Number of chunk records deleted.
        """
        with self._transaction("delete chunks") as conn:
            cur = conn.execute(
                "DELETE FROM conversation_chunks WHERE context_id = ?", (context_id,)
            )
            conn.commit()
        logger.info(f"[CHUNK_STORE] Deleted {cur.rowcount} chunks for {context_id}")
        return cur.rowcount

    def delete_by_user(self, user_identifier: str) -> int:
        """Delete chunks of the private context keyed by *user_identifier*.

        Group contexts are never touched; used for personal data removal.
        """
        with self._transaction("delete user chunks") as conn:
            cur = conn.execute(
                "DELETE FROM conversation_chunks WHERE context_id = ? AND context_type = 'private'",
                (user_identifier,),
            )
            conn.commit()
        return cur.rowcount

    # ------------------------------------------------------------------
    # Similarity search
    # ------------------------------------------------------------------

    def similarity_search(
        self,
        query_vector: list[float],
        context_id: str | None = None,
        top_k: int = 5,
        min_similarity: float = 0.0,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> list[SearchResult]:
        """Cosine similarity search. Returns results sorted best-first.

        Results below *min_similarity* are excluded. Equal similarities are
        ordered by higher chunk index (more recent) first.
        """
        try:
            blob = encode_vector(query_vector, self._dimensions)
        except ValueError as exc:
            raise StoreError(f"similarity search failed: {exc}") from exc

        clauses: list[str] = []
        params: list[object] = [blob]
        if context_id is not None:
            clauses.append("context_id = ?")
            params.append(context_id)
        if after is not None:
            clauses.append("timestamp_start >= ?")
            params.append(to_db_time(after))
        if before is not None:
            clauses.append("timestamp_end <= ?")
            params.append(to_db_time(before))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([min_similarity, top_k])

        sql = f"""
            SELECT * FROM (
                SELECT {_RECORD_COLUMNS},
                       1.0 - vec_distance_cosine(embedding, ?) AS similarity
                FROM conversation_chunks
                {where}
            )
            WHERE similarity >= ?
            ORDER BY similarity DESC, chunk_index DESC
            LIMIT ?
        """
        with self._transaction("similarity search") as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            SearchResult(
                record=_row_to_record(row),
                similarity=float(row["similarity"]),
                distance=1.0 - float(row["similarity"]),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Reads / statistics
    # ------------------------------------------------------------------

    def get_latest_chunk_index(self, context_id: str) -> int:
        """Return the highest chunk index ever stored for *context_id* (0 if none)."""
        with self._transaction("read latest chunk index") as conn:
            stored = conn.execute(
                "SELECT MAX(chunk_index) FROM conversation_chunks WHERE context_id = ?",
                (context_id,),
            ).fetchone()[0]
            mark = conn.execute(
                "SELECT max_chunk_index FROM chunk_index_marks WHERE context_id = ?",
                (context_id,),
            ).fetchone()
        candidates = [v for v in (stored, mark[0] if mark else None) if v is not None]
        return max(candidates) if candidates else 0

    def get_stats(self, context_id: str) -> EmbeddingStats:
        """Return chunk count, time span, and message totals for *context_id*."""
        with self._transaction("read stats") as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*) AS total_chunks,
                    MIN(timestamp_start) AS earliest_timestamp,
                    MAX(timestamp_end) AS latest_timestamp,
                    SUM(json_array_length(message_ids)) AS total_messages,
                    AVG(json_array_length(message_ids)) AS avg_chunk_size
                FROM conversation_chunks
                WHERE context_id = ?
                """,
                (context_id,),
            ).fetchone()
        return EmbeddingStats(
            total_chunks=row["total_chunks"] or 0,
            earliest_timestamp=(
                from_db_time(row["earliest_timestamp"]) if row["earliest_timestamp"] else None
            ),
            latest_timestamp=(
                from_db_time(row["latest_timestamp"]) if row["latest_timestamp"] else None
            ),
            total_messages=row["total_messages"] or 0,
            avg_chunk_size=float(row["avg_chunk_size"] or 0.0),
        )

    def has_embeddings(self, context_id: str) -> bool:
        with self._transaction("check embeddings") as conn:
            row = conn.execute(
                "SELECT EXISTS(SELECT 1 FROM conversation_chunks WHERE context_id = ?)",
                (context_id,),
            ).fetchone()
        return bool(row[0])

    def count(self, context_id: str | None = None) -> int:
        """Return the number of stored chunks (for one context, or overall)."""
        with self._transaction("count chunks") as conn:
            if context_id is None:
                row = conn.execute("SELECT COUNT(*) FROM conversation_chunks").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM conversation_chunks WHERE context_id = ?",
                    (context_id,),
                ).fetchone()
        return row[0]

    def get_by_context_id(
        self,
        context_id: str,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
        limit: int | None = None,
    ) -> list[ChunkRecord]:
        """Return the chunks of *context_id* in chunk index order."""
        sql = f"SELECT {_RECORD_COLUMNS} FROM conversation_chunks WHERE context_id = ?"
        params: list[object] = [context_id]
        if after is not None:
            sql += " AND timestamp_start >= ?"
            params.append(to_db_time(after))
        if before is not None:
            sql += " AND timestamp_end <= ?"
            params.append(to_db_time(before))
        sql += " ORDER BY chunk_index ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        with self._transaction("read chunks") as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_contexts(self) -> list[tuple[str, int, int]]:
        """Return [(context_id, chunk_count, latest_chunk_index), ...] by context id."""
        with self._transaction("list contexts") as conn:
            rows = conn.execute(
                """
                SELECT context_id, COUNT(*) AS chunks, MAX(chunk_index) AS latest
                FROM conversation_chunks
                GROUP BY context_id
                ORDER BY context_id
                """
            ).fetchall()
        return [(r["context_id"], r["chunks"], r["latest"]) for r in rows]

    # ------------------------------------------------------------------
    # Worker candidate query
    # ------------------------------------------------------------------

    def get_candidate_contexts(
        self,
        threshold_messages: int,
        max_candidates: int,
        since: datetime,
    ) -> list[str]:
        """Return contexts with enough recent text messages, most active first.

        Counts non-deleted messages with content created after *since*.
        """
        with self._transaction("candidate context query") as conn:
            rows = conn.execute(
                """
                SELECT context_id, COUNT(*) AS message_count, MAX(created_at) AS latest_message
                FROM messages
                WHERE created_at > ?
                  AND content IS NOT NULL
                  AND TRIM(content) != ''
                  AND is_deleted = 0
                GROUP BY context_id
                HAVING COUNT(*) >= ?
                ORDER BY latest_message DESC
                LIMIT ?
                """,
                (to_db_time(since), threshold_messages, max_candidates),
            ).fetchall()
        return [r["context_id"] for r in rows]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_record(row: sqlite3.Row) -> ChunkRecord:
    return ChunkRecord(
        id=row["id"],
        context_id=row["context_id"],
        context_type=row["context_type"],
        chunk_text=row["chunk_text"],
        embedding=decode_vector(row["embedding"]),
        message_ids=json.loads(row["message_ids"]),
        chunk_index=row["chunk_index"],
        timestamp_start=from_db_time(row["timestamp_start"]),
        timestamp_end=from_db_time(row["timestamp_end"]),
        metadata=json.loads(row["metadata"]),
        created_at=row["created_at"],
    )
