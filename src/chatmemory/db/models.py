"""Domain models for the chatmemory database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_db_time(value: datetime) -> str:
    """Normalise *value* to fixed-width ISO-8601 UTC text.

    Naive datetimes are taken to be UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_time(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Message:
    message_id: str
    context_id: str
    created_at: datetime
    content: str | None = None
    context_type: str = "private"  # private | group
    direction: str = "incoming"  # incoming | outgoing
    sender: str = ""
    media_type: str | None = None
    media_url: str | None = None
    is_bot_command: bool = False
    is_admin_command: bool = False
    is_deleted: bool = False
    metadata: dict = field(default_factory=dict)

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        """Build a Message from a JSON-lines record.

        Required keys: ``message_id``, ``context_id``, ``created_at`` (ISO-8601).

        Raises:
            ValueError: A required key is missing or a value is malformed.
        """
        missing = [k for k in ("message_id", "context_id", "created_at") if not data.get(k)]
        if missing:
            raise ValueError(f"missing required field(s): {', '.join(missing)}")
        context_type = data.get("context_type", "private")
        direction = data.get("direction", "incoming")
        if context_type not in ("private", "group"):
            raise ValueError(f"context_type must be 'private' or 'group', got {context_type!r}")
        if direction not in ("incoming", "outgoing"):
            raise ValueError(f"direction must be 'incoming' or 'outgoing', got {direction!r}")
        return cls(
            message_id=str(data["message_id"]),
            context_id=str(data["context_id"]),
            created_at=from_db_time(str(data["created_at"])),
            content=data.get("content"),
            context_type=context_type,
            direction=direction,
            sender=str(data.get("sender", "")),
            media_type=data.get("media_type"),
            media_url=data.get("media_url"),
            is_bot_command=bool(data.get("is_bot_command", False)),
            is_admin_command=bool(data.get("is_admin_command", False)),
            is_deleted=bool(data.get("is_deleted", False)),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class ChunkRecord:
    """One embedded chunk as persisted in conversation_chunks."""

    context_id: str
    chunk_index: int
    chunk_text: str
    embedding: list[float]
    message_ids: list[str]
    timestamp_start: datetime
    timestamp_end: datetime
    context_type: str = "private"
    metadata: dict = field(default_factory=dict)
    id: int | None = None  # set after insert; None for unsaved records
    created_at: str | None = None

    @property
    def metadata_json(self) -> str:
        return json.dumps(self.metadata, sort_keys=True)


@dataclass
class SearchResult:
    """A stored chunk with its cosine similarity to the query vector."""

    record: ChunkRecord
    similarity: float
    distance: float


@dataclass
class EmbeddingStats:
    total_chunks: int = 0
    earliest_timestamp: datetime | None = None
    latest_timestamp: datetime | None = None
    total_messages: int = 0
    avg_chunk_size: float = 0.0
