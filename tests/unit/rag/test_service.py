"""Tests for ConversationIndexService — indexing, retrieval, maintenance."""

from __future__ import annotations

import math
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from chatmemory.config import ConfigError, RagConfig
from chatmemory.db.chunk_store import ChunkStore
from chatmemory.db.history import MessageHistory
from chatmemory.db.models import ChunkRecord
from chatmemory.errors import ProviderError
from chatmemory.rag.service import ConversationIndexService
from conftest import T0, make_messages


@pytest.fixture
def store(tmp_db) -> ChunkStore:
    return ChunkStore(tmp_db, dimensions=4)


@pytest.fixture
def history(tmp_db) -> MessageHistory:
    return MessageHistory(tmp_db)


@pytest.fixture
def service(store, history, embedder) -> ConversationIndexService:
    return ConversationIndexService(store, history, RagConfig(), embedder)


def _indices(store: ChunkStore, context_id: str = "room-42") -> list[int]:
    return [r.chunk_index for r in store.get_by_context_id(context_id)]


# ---------------------------------------------------------------------------
# embed_and_store_chunk
# ---------------------------------------------------------------------------


def test_room_42_scenario(service, store):
    messages = make_messages(12)

    assert service.embed_and_store_chunk("room-42", messages) == 2

    first, second = store.get_by_context_id("room-42")
    assert (first.chunk_index, second.chunk_index) == (1, 2)
    assert first.message_ids == [f"m{i}" for i in range(10)]
    assert second.message_ids == [f"m{i}" for i in range(8, 12)]
    assert first.context_type == "group"
    assert first.timestamp_start == messages[0].created_at
    assert second.timestamp_end == messages[11].created_at


def test_indices_monotonic_across_calls_and_deletion(service, store):
    service.embed_and_store_chunk("room-42", make_messages(12))
    later = make_messages(12, start=T0 + timedelta(hours=1), prefix="n")
    service.embed_and_store_chunk("room-42", later)
    assert _indices(store) == [1, 2, 3, 4]

    service.delete_embeddings("room-42")
    service.embed_and_store_chunk("room-42", make_messages(3))
    assert _indices(store) == [5]


def test_empty_messages_is_noop(service, store, embedder):
    assert service.embed_and_store_chunk("room-42", []) == 0
    assert store.count() == 0
    assert embedder.calls == []


def test_provider_failure_propagates_and_keeps_earlier_chunks(store, history):
    embedder = MagicMock()
    embedder.embed.side_effect = [[1.0, 0.0, 0.0, 0.0], ProviderError("quota exceeded")]
    service = ConversationIndexService(store, history, RagConfig(), embedder)

    with pytest.raises(ProviderError, match="quota"):
        service.embed_and_store_chunk("room-42", make_messages(12))

    assert _indices(store) == [1]

    # retrying allocates above the committed chunk
    embedder.embed.side_effect = None
    embedder.embed.return_value = [1.0, 0.0, 0.0, 0.0]
    service.embed_and_store_chunk("room-42", make_messages(12))
    assert _indices(store) == [1, 2, 3]


# ---------------------------------------------------------------------------
# process_unembedded_messages
# ---------------------------------------------------------------------------


def test_process_unembedded_embeds_new_messages(service, history, store):
    history.add_messages(make_messages(12))

    assert service.process_unembedded_messages("room-42") == 12
    assert store.count("room-42") == 2


def test_process_unembedded_only_newer_than_mark(service, history, store):
    history.add_messages(make_messages(12))
    service.process_unembedded_messages("room-42")

    history.add_messages(make_messages(3, start=T0 + timedelta(hours=2), prefix="n"))

    assert service.process_unembedded_messages("room-42") == 3
    newest = store.get_by_context_id("room-42")[-1]
    assert newest.chunk_index == 3
    assert newest.message_ids == ["n0", "n1", "n2"]


def test_threshold_gating_nothing_new(service, history, store, embedder):
    history.add_messages(make_messages(12))
    service.process_unembedded_messages("room-42")
    calls_before = len(embedder.calls)

    assert service.process_unembedded_messages("room-42") == 0
    assert store.count("room-42") == 2
    assert len(embedder.calls) == calls_before


def test_threshold_gating_blank_content(service, history, store):
    blanks = make_messages(4)
    for msg in blanks:
        msg.content = "  "
    history.add_messages(blanks)

    assert service.process_unembedded_messages("room-42") == 0
    assert store.count() == 0


def test_process_unembedded_respects_history_page_size(store, history, embedder):
    history.add_messages(make_messages(30))
    service = ConversationIndexService(
        store, history, RagConfig(history_page_size=5), embedder
    )

    assert service.process_unembedded_messages("room-42") == 5
    [chunk] = store.get_by_context_id("room-42")
    assert chunk.message_ids == [f"m{i}" for i in range(25, 30)]


def test_process_unembedded_counts_only_messages_in_stored_chunks(store, history, embedder):
    history.add_messages(make_messages(12))
    service = ConversationIndexService(store, history, RagConfig(min_chunk_size=5), embedder)

    # the 4-message tail window is dropped, m10 and m11 stay pending
    assert service.process_unembedded_messages("room-42") == 10
    [chunk] = store.get_by_context_id("room-42")
    assert chunk.message_ids == [f"m{i}" for i in range(10)]

    assert service.process_unembedded_messages("room-42") == 0
    assert store.count("room-42") == 1


def test_merge_min_tokens_folds_small_tail_chunk(store, history, embedder):
    history.add_messages(make_messages(12))
    service = ConversationIndexService(store, history, RagConfig(merge_min_tokens=100), embedder)

    assert service.process_unembedded_messages("room-42") == 12
    [chunk] = store.get_by_context_id("room-42")
    assert chunk.chunk_index == 1
    assert chunk.message_ids == [f"m{i}" for i in range(12)]
    assert len(embedder.calls) == 1


def test_merge_disabled_by_default(service, store):
    assert service.get_config().merge_min_tokens == 0
    assert service.embed_and_store_chunk("room-42", make_messages(12)) == 2


# ---------------------------------------------------------------------------
# retrieve_relevant_context
# ---------------------------------------------------------------------------


def _vec(cos: float) -> list[float]:
    return [cos, math.sqrt(1.0 - cos * cos), 0.0, 0.0]


class _QueryEmbedder:
    def embed(self, text: str) -> list[float]:
        return [1.0, 0.0, 0.0, 0.0]


def _seed(store: ChunkStore, index: int, cos: float, message_ids: list[str]) -> None:
    start = T0 + timedelta(minutes=10 * index)
    store.create(
        ChunkRecord(
            context_id="room-42",
            chunk_index=index,
            chunk_text=f"text of chunk {index}",
            embedding=_vec(cos),
            message_ids=message_ids,
            timestamp_start=start,
            timestamp_end=start + timedelta(minutes=5),
        )
    )


def test_retrieval_ordering_and_threshold(store, history):
    _seed(store, 1, 0.9, ["m0", "m1", "m2"])
    _seed(store, 2, 0.7, ["m2", "m3"])
    _seed(store, 3, 0.4, ["m4"])
    service = ConversationIndexService(
        store, history, RagConfig(top_k=2, min_similarity=0.5), _QueryEmbedder()
    )

    result = service.retrieve_relevant_context("room-42", "what did we decide?")

    assert [r.record.chunk_index for r in result.relevant_chunks] == [1, 2]
    assert result.total_chunks == 2
    assert result.message_ids == ["m0", "m1", "m2", "m3"]
    assert result.avg_similarity == pytest.approx(0.8, abs=1e-5)
    assert result.retrieval_time_ms >= 0
    assert result.context_text.startswith("--- Relevant Context 1 (90% relevant, ")
    assert "--- Relevant Context 2 (70% relevant, " in result.context_text
    assert "text of chunk 1\n\n--- Relevant Context 2" in result.context_text


def test_retrieval_resolves_messages_through_history(store, history):
    history.add_messages(make_messages(4))
    _seed(store, 1, 0.95, ["m3", "m1"])
    service = ConversationIndexService(store, history, RagConfig(), _QueryEmbedder())

    result = service.retrieve_relevant_context("room-42", "query")

    assert [m.message_id for m in result.relevant_messages] == ["m3", "m1"]


def test_retrieval_without_lookup_capability(store):
    _seed(store, 1, 0.95, ["m0"])

    class PagesOnly:
        def get_messages(self, context_id, limit, offset):
            return []

    service = ConversationIndexService(store, PagesOnly(), RagConfig(), _QueryEmbedder())
    result = service.retrieve_relevant_context("room-42", "query")

    assert result.message_ids == ["m0"]
    assert result.relevant_messages == []


def test_retrieval_no_match_is_empty_result(store, history):
    _seed(store, 1, 0.2, ["m0"])
    service = ConversationIndexService(store, history, RagConfig(), _QueryEmbedder())

    result = service.retrieve_relevant_context("room-42", "query")

    assert result.is_empty
    assert result.context_text == ""
    assert result.avg_similarity == 0.0


def test_retrieval_blank_query_skips_provider(service, embedder):
    assert service.retrieve_relevant_context("room-42", "   ").is_empty
    assert embedder.calls == []


def test_retrieval_provider_error_propagates(store, history):
    embedder = MagicMock()
    embedder.embed.side_effect = ProviderError("down")
    service = ConversationIndexService(store, history, RagConfig(), embedder)

    with pytest.raises(ProviderError):
        service.retrieve_relevant_context("room-42", "query")


def test_retrieval_time_window(store, history):
    _seed(store, 1, 0.9, ["m0"])
    _seed(store, 2, 0.8, ["m1"])
    _seed(store, 3, 0.7, ["m2"])
    service = ConversationIndexService(store, history, RagConfig(), _QueryEmbedder())

    after = service.retrieve_relevant_context("room-42", "q", after=T0 + timedelta(minutes=15))
    assert [r.record.chunk_index for r in after.relevant_chunks] == [2, 3]

    before = service.retrieve_relevant_context("room-42", "q", before=T0 + timedelta(minutes=26))
    assert [r.record.chunk_index for r in before.relevant_chunks] == [1, 2]


# ---------------------------------------------------------------------------
# Maintenance
# ---------------------------------------------------------------------------


def test_rebuild_is_idempotent_in_chunk_count(service, history, store):
    history.add_messages(make_messages(22))
    service.process_unembedded_messages("room-42")

    first = service.rebuild_embeddings("room-42")
    second = service.rebuild_embeddings("room-42")

    assert first == second == 3
    assert store.count("room-42") == 3
    # indices are never reused after a rebuild
    assert _indices(store) == [7, 8, 9]


def test_rebuild_skips_blank_messages(service, history, store):
    messages = make_messages(5)
    messages[2].content = ""
    history.add_messages(messages)

    assert service.rebuild_embeddings("room-42") == 1
    [chunk] = store.get_by_context_id("room-42")
    assert "m2" not in chunk.message_ids


def test_has_embeddings_stats_and_delete(service, store):
    assert service.has_embeddings("room-42") is False
    service.embed_and_store_chunk("room-42", make_messages(12))

    assert service.has_embeddings("room-42") is True
    assert service.get_stats("room-42").total_chunks == 2
    assert service.delete_embeddings("room-42") == 2
    assert service.has_embeddings("room-42") is False


def test_delete_user_embeddings_only_private_context(service, store):
    service.embed_and_store_chunk(
        "alice", make_messages(3, context_id="alice", context_type="private")
    )
    service.embed_and_store_chunk("team", make_messages(3, context_id="team"))

    assert service.delete_user_embeddings("alice") == 1
    assert service.has_embeddings("alice") is False
    assert service.has_embeddings("team") is True


def test_suggest_chunk_size(service, history):
    assert service.suggest_chunk_size("room-42") == 10  # no history: configured size

    history.add_messages(make_messages(4))
    assert service.suggest_chunk_size("room-42") == 20  # short messages: upper clamp

    long = make_messages(4, context_id="essays")
    for msg in long:
        msg.content = "x" * 2000
    history.add_messages(long)
    assert service.suggest_chunk_size("essays") == 3


# ---------------------------------------------------------------------------
# Per-context locks
# ---------------------------------------------------------------------------


def test_context_locks_released_after_use(service, history):
    history.add_messages(make_messages(12))
    service.process_unembedded_messages("room-42")
    service.rebuild_embeddings("room-42")
    service.delete_embeddings("room-42")

    assert service.active_context_locks() == 0


def test_context_lock_held_while_embedding(store, history):
    entered = threading.Event()
    release = threading.Event()

    class BlockingEmbedder:
        def embed(self, text):
            entered.set()
            release.wait(5)
            return [1.0, 0.0, 0.0, 0.0]

    service = ConversationIndexService(store, history, RagConfig(), BlockingEmbedder())
    worker = threading.Thread(
        target=service.embed_and_store_chunk, args=("room-42", make_messages(3))
    )
    worker.start()
    assert entered.wait(5)

    assert service.active_context_locks() == 1
    release.set()
    worker.join(5)
    assert service.active_context_locks() == 0
    assert store.count("room-42") == 1


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def test_get_config_returns_copy(service):
    cfg = service.get_config()
    cfg.top_k = 99
    assert service.get_config().top_k == 3


def test_update_config_changes_chunking(service, store):
    service.update_config(chunk_size=4, chunk_overlap=0)
    assert service.embed_and_store_chunk("room-42", make_messages(8)) == 2


def test_update_config_invalid_keeps_old(service):
    with pytest.raises(ConfigError):
        service.update_config(chunk_overlap=10)
    assert service.get_config().chunk_overlap == 2


def test_update_config_swaps_owned_embedder(store, history):
    with patch("chatmemory.rag.service.LiteLLMEmbedder") as embedder_cls:
        service = ConversationIndexService(store, history, RagConfig())
        service.update_config(embedding_model="cohere/embed-english-v3.0")

    models = [c.args[0] for c in embedder_cls.call_args_list]
    assert models == ["openai/text-embedding-3-small", "cohere/embed-english-v3.0"]


def test_update_config_keeps_injected_embedder(service, embedder):
    service.update_config(embedding_model="cohere/embed-english-v3.0")
    service.embed_and_store_chunk("room-42", make_messages(2))
    assert len(embedder.calls) == 1
