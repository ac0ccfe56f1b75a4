"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import math
from datetime import datetime, timedelta, timezone

import pytest

from chatmemory.db.connection import Database
from chatmemory.db.models import Message
from chatmemory.db.schema import initialize

T0 = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".chatmemory.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


def make_messages(
    n: int,
    context_id: str = "room-42",
    *,
    start: datetime = T0,
    step: timedelta = timedelta(minutes=1),
    prefix: str = "m",
    context_type: str = "group",
) -> list[Message]:
    """*n* chronological text messages alternating incoming/outgoing."""
    return [
        Message(
            message_id=f"{prefix}{i}",
            context_id=context_id,
            context_type=context_type,
            created_at=start + step * i,
            direction="incoming" if i % 2 == 0 else "outgoing",
            sender="alice" if i % 2 == 0 else "bot",
            content=f"message number {i}",
        )
        for i in range(n)
    ]


class HashEmbedder:
    """Deterministic 4-d unit vectors derived from the text hash."""

    dimensions = 4

    def __init__(self) -> None:
        self.calls: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        digest = hashlib.sha256(text.encode()).digest()
        raw = [b + 1.0 for b in digest[:4]]
        norm = math.sqrt(sum(v * v for v in raw))
        return [v / norm for v in raw]


@pytest.fixture
def embedder() -> HashEmbedder:
    return HashEmbedder()
