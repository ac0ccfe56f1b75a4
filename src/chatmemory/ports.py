"""Collaborator interfaces required by the indexing service and worker.

The SQLite implementations live in chatmemory.db; tests and host
applications may pass anything that satisfies these protocols.
"""

from __future__ import annotations

from datetime import datetime
from typing import Protocol, runtime_checkable

from chatmemory.db.models import ChunkRecord, EmbeddingStats, Message, SearchResult


class HistoryProvider(Protocol):
    def get_messages(self, context_id: str, limit: int, offset: int) -> list[Message]:
        """Return a page of messages in chronological order."""
        ...


@runtime_checkable
class MessageLookup(Protocol):
    """Optional history capability used to resolve retrieved message ids."""

    def get_messages_by_ids(self, message_ids: list[str]) -> list[Message]: ...


class EmbeddingProvider(Protocol):
    def embed(self, text: str) -> list[float]:
        """Return the embedding of *text*; raise ProviderError on failure."""
        ...


class ChunkStoreProtocol(Protocol):
    def create(self, record: ChunkRecord) -> int: ...

    def similarity_search(
        self,
        query_vector: list[float],
        context_id: str | None = None,
        top_k: int = 5,
        min_similarity: float = 0.0,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> list[SearchResult]: ...

    def get_latest_chunk_index(self, context_id: str) -> int: ...

    def get_stats(self, context_id: str) -> EmbeddingStats: ...

    def has_embeddings(self, context_id: str) -> bool: ...

    def delete_by_context_id(self, context_id: str) -> int: ...

    def delete_by_user(self, user_identifier: str) -> int: ...

    def get_candidate_contexts(
        self, threshold_messages: int, max_candidates: int, since: datetime
    ) -> list[str]: ...
