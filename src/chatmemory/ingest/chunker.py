"""Message-window chunker for conversation transcripts.

Chunk *i* covers ``messages[i * step : i * step + chunk_size]`` with
``step = chunk_size - overlap``; the final window may be shorter. Rendering
is deterministic, so re-chunking identical input yields identical text.

Token counting uses a 4-chars-per-token approximation; no external
tokenizer dependency is required.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime

from chatmemory.db.models import Message, to_db_time

logger = logging.getLogger(__name__)

_MIN_ADAPTIVE_SIZE = 3
_MAX_ADAPTIVE_SIZE = 20


@dataclass
class MessageChunk:
    """A window of consecutive messages rendered to text.

    Attributes:
        chunk_index: 0-based position within one chunk() call. The service
            turns it into the persisted, per-context index.
        messages: The contributing messages, in order.
        text: Rendered transcript used for embedding.
    """

    chunk_index: int
    messages: list[Message]
    text: str
    metadata: dict = field(default_factory=dict)

    @property
    def message_ids(self) -> list[str]:
        return [m.message_id for m in self.messages]

    @property
    def timestamp_start(self) -> datetime:
        return self.messages[0].created_at

    @property
    def timestamp_end(self) -> datetime:
        return self.messages[-1].created_at

    @property
    def token_estimate(self) -> int:
        return TextChunker.count_tokens(self.text)


class TextChunker:
    """Split an ordered message list into overlapping fixed-size windows.

    Default: 10 messages / 2 overlapping messages.
    """

    def __init__(self, chunk_size: int = 10, overlap: int = 2, min_chunk_size: int = 1) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if overlap < 0 or overlap >= chunk_size:
            raise ValueError(
                f"overlap must be in [0, chunk_size), got overlap={overlap}, "
                f"chunk_size={chunk_size}"
            )
        if min_chunk_size < 1:
            raise ValueError("min_chunk_size must be >= 1")
        self.chunk_size = chunk_size
        self.overlap = overlap
        self.min_chunk_size = min_chunk_size

    @property
    def step(self) -> int:
        return self.chunk_size - self.overlap

    def chunk(self, messages: list[Message]) -> list[MessageChunk]:
        """Split *messages* (chronological) into MessageChunk objects.

        Returns:
            Ordered list of chunks with sequential local ``chunk_index``.
            Empty input, or input shorter than ``min_chunk_size``, yields [].
        """
        windows: list[list[Message]] = []
        pos = 0
        length = len(messages)

        while pos < length:
            end = min(pos + self.chunk_size, length)
            window = messages[pos:end]
            if len(window) < self.min_chunk_size:
                break
            windows.append(window)
            if end >= length:
                break
            pos += self.step

        chunks = [self._make_chunk(i, w) for i, w in enumerate(windows)]
        logger.debug(f"[CHUNKER] {length} messages -> {len(chunks)} chunks")
        return chunks

    def _make_chunk(self, index: int, window: list[Message]) -> MessageChunk:
        text = render_messages(window)
        metadata = chunk_metadata(window)
        metadata["token_estimate"] = self.count_tokens(text)
        return MessageChunk(chunk_index=index, messages=list(window), text=text, metadata=metadata)

    @staticmethod
    def count_tokens(text: str) -> int:
        """Approximate token count: 4 characters ≈ 1 token."""
        return max(1, len(text) // 4)

    @staticmethod
    def optimal_chunk_size(avg_message_length: float, target_tokens: int = 1500) -> int:
        """Messages per chunk that keep a chunk near *target_tokens*, clamped to [3, 20]."""
        if avg_message_length <= 0:
            return _MAX_ADAPTIVE_SIZE
        per_message = avg_message_length / 4
        size = int(target_tokens // per_message)
        return max(_MIN_ADAPTIVE_SIZE, min(_MAX_ADAPTIVE_SIZE, size))

    @staticmethod
    def merge_small_chunks(chunks: list[MessageChunk], min_tokens: int = 500) -> list[MessageChunk]:
        """Fold each chunk under *min_tokens* into its predecessor, then re-index.

        Messages shared by overlapping windows appear once in a merged chunk.
        """
        merged: list[MessageChunk] = []
        for chunk in chunks:
            if merged and TextChunker.count_tokens(chunk.text) < min_tokens:
                previous = merged[-1]
                seen = {m.message_id for m in previous.messages}
                combined = previous.messages + [m for m in chunk.messages if m.message_id not in seen]
                merged[-1] = _rebuild(previous.chunk_index, combined)
            else:
                merged.append(chunk)
        return [replace(c, chunk_index=i) for i, c in enumerate(merged)]


def _rebuild(index: int, messages: list[Message]) -> MessageChunk:
    text = render_messages(messages)
    metadata = chunk_metadata(messages)
    metadata["token_estimate"] = TextChunker.count_tokens(text)
    return MessageChunk(chunk_index=index, messages=messages, text=text, metadata=metadata)


def render_messages(messages: list[Message]) -> str:
    """Render messages with content as ``[timestamp] Role[ [media]]: content`` lines."""
    lines: list[str] = []
    for msg in messages:
        if not msg.has_content:
            continue
        role = "User" if msg.direction == "incoming" else "Assistant"
        media = f" [{msg.media_type}]" if msg.media_type else ""
        lines.append(f"[{to_db_time(msg.created_at)}] {role}{media}: {msg.content}")
    return "\n".join(lines)


def chunk_metadata(messages: list[Message]) -> dict:
    """Lightweight descriptive fields stored alongside a chunk."""
    incoming = sum(1 for m in messages if m.direction == "incoming")
    has_commands = any(m.is_bot_command or m.is_admin_command for m in messages)
    senders = sorted({m.sender for m in messages if m.sender})
    return {
        "message_count": len(messages),
        "rendered_count": sum(1 for m in messages if m.has_content),
        "participant_count": len(senders),
        "senders": senders,
        "has_media": any(m.media_url or m.media_type for m in messages),
        "has_commands": has_commands,
        "is_command_session": has_commands and incoming <= 2,
        "incoming_count": incoming,
        "outgoing_count": len(messages) - incoming,
    }
