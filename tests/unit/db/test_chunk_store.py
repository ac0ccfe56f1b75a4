"""Tests for ChunkStore: persistence, high-water marks, similarity search, candidates."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

from chatmemory.db.chunk_store import ChunkStore
from chatmemory.db.history import MessageHistory
from chatmemory.db.models import ChunkRecord, Message
from chatmemory.errors import StoreError
from conftest import T0, make_messages


def _vec(cos: float) -> list[float]:
    """Unit vector whose cosine similarity to [1, 0, 0, 0] is *cos*."""
    return [cos, math.sqrt(1.0 - cos * cos), 0.0, 0.0]


_QUERY = [1.0, 0.0, 0.0, 0.0]


def _record(
    context_id: str = "room-42",
    index: int = 1,
    vector: list[float] | None = None,
    minutes: int = 0,
    message_ids: list[str] | None = None,
    context_type: str = "group",
) -> ChunkRecord:
    start = T0 + timedelta(minutes=minutes)
    return ChunkRecord(
        context_id=context_id,
        context_type=context_type,
        chunk_index=index,
        chunk_text=f"chunk {index}",
        embedding=vector or _vec(1.0),
        message_ids=message_ids or [f"m{index}a", f"m{index}b"],
        timestamp_start=start,
        timestamp_end=start + timedelta(minutes=5),
        metadata={"message_count": 2},
    )


@pytest.fixture
def store(tmp_db) -> ChunkStore:
    return ChunkStore(tmp_db, dimensions=4)


# ---------------------------------------------------------------------------
# create / read
# ---------------------------------------------------------------------------


def test_create_returns_id_and_round_trips(store):
    record = _record(vector=_vec(0.6))
    row_id = store.create(record)

    assert row_id == record.id
    [stored] = store.get_by_context_id("room-42")
    assert stored.id == row_id
    assert stored.chunk_text == "chunk 1"
    assert stored.message_ids == ["m1a", "m1b"]
    assert stored.timestamp_start == T0
    assert stored.metadata == {"message_count": 2}
    assert stored.embedding == pytest.approx(_vec(0.6), abs=1e-6)


def test_create_rejects_wrong_dimensions(store):
    with pytest.raises(StoreError, match="dimensions"):
        store.create(_record(vector=[1.0, 0.0]))


def test_create_duplicate_index_raises_store_error(store):
    store.create(_record(index=1))
    with pytest.raises(StoreError):
        store.create(_record(index=1))
    assert store.count("room-42") == 1


def test_get_by_context_id_orders_and_filters(store):
    for index, minutes in ((3, 20), (1, 0), (2, 10)):
        store.create(_record(index=index, minutes=minutes))

    assert [r.chunk_index for r in store.get_by_context_id("room-42")] == [1, 2, 3]
    after = store.get_by_context_id("room-42", after=T0 + timedelta(minutes=5))
    assert [r.chunk_index for r in after] == [2, 3]
    assert len(store.get_by_context_id("room-42", limit=1)) == 1


# ---------------------------------------------------------------------------
# High-water mark
# ---------------------------------------------------------------------------


def test_latest_chunk_index_zero_when_empty(store):
    assert store.get_latest_chunk_index("room-42") == 0


def test_latest_chunk_index_survives_deletion(store):
    store.create(_record(index=1))
    store.create(_record(index=2))

    assert store.delete_by_context_id("room-42") == 2
    assert store.has_embeddings("room-42") is False
    assert store.get_latest_chunk_index("room-42") == 2


def test_latest_chunk_index_is_per_context(store):
    store.create(_record("a", index=5))
    store.create(_record("b", index=2))
    assert store.get_latest_chunk_index("a") == 5
    assert store.get_latest_chunk_index("b") == 2


# ---------------------------------------------------------------------------
# Stats / counting
# ---------------------------------------------------------------------------


def test_get_stats(store):
    store.create(_record(index=1, minutes=0, message_ids=["a", "b", "c"]))
    store.create(_record(index=2, minutes=30, message_ids=["c", "d"]))

    stats = store.get_stats("room-42")
    assert stats.total_chunks == 2
    assert stats.total_messages == 5
    assert stats.avg_chunk_size == pytest.approx(2.5)
    assert stats.earliest_timestamp == T0
    assert stats.latest_timestamp == T0 + timedelta(minutes=35)


def test_get_stats_empty_context(store):
    stats = store.get_stats("nobody")
    assert stats.total_chunks == 0
    assert stats.latest_timestamp is None


def test_count_and_list_contexts(store):
    store.create(_record("a", index=1))
    store.create(_record("a", index=2))
    store.create(_record("b", index=1))

    assert store.count() == 3
    assert store.count("a") == 2
    assert store.list_contexts() == [("a", 2, 2), ("b", 1, 1)]


def test_delete_by_user_only_touches_private_contexts(store):
    store.create(_record("alice", index=1, context_type="private"))
    store.create(_record("team", index=1, context_type="group"))

    assert store.delete_by_user("alice") == 1
    assert store.delete_by_user("team") == 0
    assert store.has_embeddings("team")


# ---------------------------------------------------------------------------
# Similarity search
# ---------------------------------------------------------------------------


def test_similarity_search_threshold_and_order(store):
    store.create(_record(index=1, vector=_vec(0.9)))
    store.create(_record(index=2, vector=_vec(0.4)))
    store.create(_record(index=3, vector=_vec(0.7)))

    results = store.similarity_search(_QUERY, "room-42", top_k=5, min_similarity=0.5)

    assert [r.record.chunk_index for r in results] == [1, 3]
    assert results[0].similarity == pytest.approx(0.9, abs=1e-5)
    assert results[1].similarity == pytest.approx(0.7, abs=1e-5)
    assert results[0].distance == pytest.approx(0.1, abs=1e-5)


def test_similarity_search_top_k(store):
    for index, cos in enumerate((0.95, 0.9, 0.85, 0.8), start=1):
        store.create(_record(index=index, vector=_vec(cos)))

    results = store.similarity_search(_QUERY, "room-42", top_k=2)
    assert [r.record.chunk_index for r in results] == [1, 2]


def test_similarity_search_ties_prefer_recent_chunk(store):
    store.create(_record(index=1, vector=_vec(0.8)))
    store.create(_record(index=2, vector=_vec(0.8)))

    results = store.similarity_search(_QUERY, "room-42", top_k=2)
    assert [r.record.chunk_index for r in results] == [2, 1]


def test_similarity_search_scoped_to_context(store):
    store.create(_record("a", index=1, vector=_vec(0.9)))
    store.create(_record("b", index=1, vector=_vec(0.99)))

    results = store.similarity_search(_QUERY, "a", top_k=5)
    assert [r.record.context_id for r in results] == ["a"]


def test_similarity_search_time_filters(store):
    store.create(_record("a", index=1, minutes=0))
    store.create(_record("b", index=1, minutes=60))

    after = store.similarity_search(_QUERY, top_k=5, after=T0 + timedelta(minutes=30))
    assert [r.record.context_id for r in after] == ["b"]
    before = store.similarity_search(_QUERY, top_k=5, before=T0 + timedelta(minutes=30))
    assert [r.record.context_id for r in before] == ["a"]


def test_similarity_search_empty_store(store):
    assert store.similarity_search(_QUERY, "room-42") == []


# ---------------------------------------------------------------------------
# Candidate contexts
# ---------------------------------------------------------------------------


def test_candidate_contexts_threshold_recency_and_order(tmp_db, store):
    history = MessageHistory(tmp_db)
    history.add_messages(make_messages(12, "busy", start=T0, prefix="b"))
    history.add_messages(make_messages(12, "newest", start=T0 + timedelta(hours=1), prefix="n"))
    history.add_messages(make_messages(3, "quiet", start=T0, prefix="q"))
    history.add_messages(make_messages(12, "stale", start=T0 - timedelta(days=3), prefix="s"))

    since = T0 - timedelta(hours=1)
    assert store.get_candidate_contexts(10, 10, since) == ["newest", "busy"]
    assert store.get_candidate_contexts(10, 1, since) == ["newest"]


def test_candidate_contexts_ignore_deleted_and_empty(tmp_db, store):
    history = MessageHistory(tmp_db)
    messages = make_messages(10, "room", start=T0)
    messages[0].content = "   "
    messages[1].is_deleted = True
    history.add_messages(messages)
    history.add_message(
        Message(message_id="extra", context_id="room", created_at=T0, content="ok")
    )

    since = T0 - timedelta(hours=1)
    assert store.get_candidate_contexts(10, 5, since) == []
    assert store.get_candidate_contexts(9, 5, since) == ["room"]
