"""Message history store — the conversation transcripts that get indexed."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable

from chatmemory.db.models import Message, from_db_time, to_db_time
from chatmemory.errors import StoreError

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = (
    "message_id, context_id, context_type, direction, sender, content, media_type, "
    "media_url, is_bot_command, is_admin_command, is_deleted, metadata, created_at"
)


class MessageHistory:
    """SQLite-backed history provider.

    Pages are counted back from the newest message but always returned in
    chronological order.
    """

    def __init__(self, conn: sqlite3.Connection, *, lock: threading.RLock | None = None) -> None:
        self._conn = conn
        self._lock = lock or threading.RLock()

    def add_messages(self, messages: Iterable[Message]) -> int:
        """Insert *messages*; ids already present are ignored.

        Returns:
            Number of newly inserted messages.
        """
        rows = [
            (
                m.message_id,
                m.context_id,
                m.context_type,
                m.direction,
                m.sender,
                m.content,
                m.media_type,
                m.media_url,
                int(m.is_bot_command),
                int(m.is_admin_command),
                int(m.is_deleted),
                json.dumps(m.metadata),
                to_db_time(m.created_at),
            )
            for m in messages
        ]
        with self._lock:
            try:
                before = self._conn.total_changes
                self._conn.executemany(
                    f"INSERT OR IGNORE INTO messages ({_MESSAGE_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    rows,
                )
                self._conn.commit()
                inserted = self._conn.total_changes - before
            except sqlite3.Error as exc:
                self._conn.rollback()
                raise StoreError(f"add messages failed: {exc}") from exc
        logger.debug(f"[HISTORY] Inserted {inserted}/{len(rows)} messages")
        return inserted

    def add_message(self, message: Message) -> bool:
        return self.add_messages([message]) == 1

    def get_messages(
        self,
        context_id: str,
        limit: int = 100,
        offset: int = 0,
        *,
        include_deleted: bool = False,
    ) -> list[Message]:
        """Return up to *limit* messages of *context_id*, oldest first.

        *offset* skips that many of the newest messages, so ``offset=0``
        yields the most recent page.
        """
        sql = f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE context_id = ?"
        if not include_deleted:
            sql += " AND is_deleted = 0"
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        with self._lock:
            try:
                rows = self._conn.execute(sql, (context_id, limit, offset)).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"read history failed: {exc}") from exc
        return [_row_to_message(r) for r in reversed(rows)]

    def get_messages_by_ids(self, message_ids: list[str]) -> list[Message]:
        """Return the messages for *message_ids* in the order given (unknown ids skipped)."""
        if not message_ids:
            return []
        placeholders = ",".join("?" * len(message_ids))
        with self._lock:
            try:
                rows = self._conn.execute(
                    f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE message_id IN ({placeholders})",
                    message_ids,
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(f"read messages failed: {exc}") from exc
        by_id = {r["message_id"]: _row_to_message(r) for r in rows}
        return [by_id[mid] for mid in message_ids if mid in by_id]

    def count_messages(self, context_id: str | None = None) -> int:
        with self._lock:
            if context_id is None:
                row = self._conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            else:
                row = self._conn.execute(
                    "SELECT COUNT(*) FROM messages WHERE context_id = ?", (context_id,)
                ).fetchone()
        return row[0]


def _row_to_message(row: sqlite3.Row) -> Message:
    return Message(
        message_id=row["message_id"],
        context_id=row["context_id"],
        context_type=row["context_type"],
        direction=row["direction"],
        sender=row["sender"],
        content=row["content"],
        media_type=row["media_type"],
        media_url=row["media_url"],
        is_bot_command=bool(row["is_bot_command"]),
        is_admin_command=bool(row["is_admin_command"]),
        is_deleted=bool(row["is_deleted"]),
        metadata=json.loads(row["metadata"]),
        created_at=from_db_time(row["created_at"]),
    )
