"""Conversation indexing and retrieval service.

Turns conversation history into embedded chunks and answers "what in this
conversation is relevant to X" queries. All collaborators are injected:

    store     ChunkStoreProtocol   persisted chunks + similarity search
    history   HistoryProvider      chronological message pages
    embedder  EmbeddingProvider    text → vector (LiteLLMEmbedder by default)

Chunk indices are allocated as ``latest + local + 1`` under a per-context
re-entrant lock, so a manual rebuild and a scheduled cycle for the same
context cannot allocate colliding indices within one process. A context's
lock is dropped once no thread holds or waits on it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime

from chatmemory.config import RagConfig
from chatmemory.db.models import EPOCH, ChunkRecord, EmbeddingStats, Message
from chatmemory.ingest.chunker import MessageChunk, TextChunker
from chatmemory.ports import (
    ChunkStoreProtocol,
    EmbeddingProvider,
    HistoryProvider,
    MessageLookup,
)
from chatmemory.rag.llm_client import LiteLLMEmbedder
from chatmemory.rag.retriever import (
    RetrievalResult,
    dedupe_message_ids,
    format_retrieved_context,
    rank_results,
)

logger = logging.getLogger(__name__)


@dataclass
class _ContextLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    holders: int = 0


class ConversationIndexService:
    """Incremental indexing, retrieval and maintenance for conversation contexts."""

    def __init__(
        self,
        store: ChunkStoreProtocol,
        history: HistoryProvider,
        config: RagConfig | None = None,
        embedder: EmbeddingProvider | None = None,
    ) -> None:
        self._store = store
        self._history = history
        self._config = replace(config) if config is not None else RagConfig()
        self._owns_embedder = embedder is None
        self._embedder: EmbeddingProvider = embedder or LiteLLMEmbedder(
            self._config.embedding_model
        )
        self._chunker = self._make_chunker(self._config)
        self._context_locks: dict[str, _ContextLock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def _make_chunker(config: RagConfig) -> TextChunker:
        return TextChunker(
            chunk_size=config.chunk_size,
            overlap=config.chunk_overlap,
            min_chunk_size=config.min_chunk_size,
        )

    @contextmanager
    def _context_lock(self, context_id: str) -> Iterator[None]:
        """Serialize index allocation for *context_id* (re-entrant)."""
        with self._locks_guard:
            entry = self._context_locks.get(context_id)
            if entry is None:
                entry = self._context_locks[context_id] = _ContextLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.holders -= 1
                if entry.holders == 0:
                    del self._context_locks[context_id]

    def active_context_locks(self) -> int:
        """Number of contexts currently holding or waiting on a lock."""
        with self._locks_guard:
            return len(self._context_locks)

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------

    def embed_and_store_chunk(self, context_id: str, messages: list[Message]) -> int:
        """Chunk *messages*, embed each chunk and append it to the store.

        Chunks are persisted one at a time in order. A failure aborts the
        call and leaves earlier chunks of the same call committed; retrying
        is safe because indices are always derived from the current maximum.

        Returns:
            Number of chunks stored (0 for empty input).

        Raises:
            ProviderError: Embedding failed.
            StoreError: Persisting a chunk failed.
        """
        return len(self._store_chunks(context_id, messages))

    def _store_chunks(self, context_id: str, messages: list[Message]) -> list[MessageChunk]:
        """Chunk, embed and persist *messages*; return the chunks actually stored."""
        if not messages:
            logger.warning(f"[RAG] No messages to embed for {context_id}")
            return []

        chunks = self._chunker.chunk(messages)
        if chunks and self._config.merge_min_tokens:
            chunks = TextChunker.merge_small_chunks(chunks, self._config.merge_min_tokens)
        if not chunks:
            return []
        context_type = messages[0].context_type

        with self._context_lock(context_id):
            latest = self._store.get_latest_chunk_index(context_id)
            for chunk in chunks:
                vector = self._embedder.embed(chunk.text)
                self._store.create(
                    ChunkRecord(
                        context_id=context_id,
                        context_type=context_type,
                        chunk_index=latest + chunk.chunk_index + 1,
                        chunk_text=chunk.text,
                        embedding=vector,
                        message_ids=chunk.message_ids,
                        timestamp_start=chunk.timestamp_start,
                        timestamp_end=chunk.timestamp_end,
                        metadata=chunk.metadata,
                    )
                )

        logger.info(
            f"[RAG] Stored {len(chunks)} chunks for {context_id} "
            f"(indices {latest + 1}..{latest + len(chunks)})"
        )
        return chunks

    def process_unembedded_messages(self, context_id: str) -> int:
        """Embed messages newer than the context's latest embedded timestamp.

        Messages left out of every stored chunk (a tail shorter than
        ``min_chunk_size``) are not counted; they stay pending for a later pass.

        Returns:
            Number of distinct messages embedded (0 when nothing qualified).
        """
        with self._context_lock(context_id):
            mark = self._store.get_stats(context_id).latest_timestamp or EPOCH
            recent = self._history.get_messages(context_id, self._config.history_page_size, 0)
            pending = [m for m in recent if m.created_at > mark and m.has_content]
            if not pending:
                logger.debug(f"[RAG] Nothing new to embed for {context_id}")
                return 0
            stored = self._store_chunks(context_id, pending)

        embedded = len({mid for chunk in stored for mid in chunk.message_ids})
        if embedded < len(pending):
            logger.debug(
                f"[RAG] {len(pending) - embedded} messages of {context_id} left for a later pass"
            )
        logger.info(f"[RAG] Embedded {embedded} new messages for {context_id}")
        return embedded

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def retrieve_relevant_context(
        self,
        context_id: str,
        query: str,
        *,
        after: datetime | None = None,
        before: datetime | None = None,
    ) -> RetrievalResult:
        """Return the chunks of *context_id* most similar to *query*.

        *after* / *before* restrict the search to chunks whose span starts at
        or after, or ends at or before, the given time.

        No chunk above ``min_similarity`` (or a blank query) yields an empty
        result, not an error.
        """
        started = time.perf_counter()
        if not query.strip():
            return RetrievalResult()

        vector = self._embedder.embed(query)
        results = rank_results(
            self._store.similarity_search(
                vector,
                context_id=context_id,
                top_k=self._config.top_k,
                min_similarity=self._config.min_similarity,
                after=after,
                before=before,
            )
        )
        message_ids = dedupe_message_ids(results)

        messages: list[Message] = []
        if message_ids and isinstance(self._history, MessageLookup):
            messages = self._history.get_messages_by_ids(message_ids)

        elapsed_ms = (time.perf_counter() - started) * 1000
        avg = sum(r.similarity for r in results) / len(results) if results else 0.0
        logger.debug(
            f"[RAG] Retrieved {len(results)} chunks for {context_id} "
            f"(avg similarity {avg:.3f}, {elapsed_ms:.1f} ms)"
        )
        return RetrievalResult(
            relevant_chunks=results,
            message_ids=message_ids,
            relevant_messages=messages,
            context_text=format_retrieved_context(results),
            total_chunks=len(results),
            avg_similarity=avg,
            retrieval_time_ms=elapsed_ms,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def has_embeddings(self, context_id: str) -> bool:
        return self._store.has_embeddings(context_id)

    def get_stats(self, context_id: str) -> EmbeddingStats:
        return self._store.get_stats(context_id)

    def delete_embeddings(self, context_id: str) -> int:
        with self._context_lock(context_id):
            deleted = self._store.delete_by_context_id(context_id)
        logger.info(f"[RAG] Deleted {deleted} chunks for {context_id}")
        return deleted

    def delete_user_embeddings(self, user_identifier: str) -> int:
        """Remove the private-chat chunks of *user_identifier* (data removal).

        A private context is keyed by the user's identifier; group contexts
        the user took part in are left alone.
        """
        with self._context_lock(user_identifier):
            deleted = self._store.delete_by_user(user_identifier)
        logger.info(f"[RAG] Deleted {deleted} private chunks for user {user_identifier}")
        return deleted

    def suggest_chunk_size(self, context_id: str) -> int:
        """Messages per chunk that keep chunks of *context_id* near 1500 tokens.

        Based on the average content length of the latest history page;
        falls back to the configured ``chunk_size`` when there is no content.
        """
        recent = self._history.get_messages(context_id, self._config.history_page_size, 0)
        lengths = [len(m.content) for m in recent if m.has_content]
        if not lengths:
            return self._config.chunk_size
        return TextChunker.optimal_chunk_size(sum(lengths) / len(lengths))

    def rebuild_embeddings(self, context_id: str) -> int:
        """Delete and re-embed the whole (bounded) history of *context_id*.

        Expensive: every chunk is re-embedded. Intended for operators after a
        chunking or embedding model change.

        Returns:
            Number of chunks stored by the rebuild.
        """
        with self._context_lock(context_id):
            self.delete_embeddings(context_id)
            history = self._history.get_messages(context_id, self._config.rebuild_page_size, 0)
            messages = [m for m in history if m.has_content]
            stored = self.embed_and_store_chunk(context_id, messages) if messages else 0
        logger.info(f"[RAG] Rebuilt {context_id}: {stored} chunks from {len(messages)} messages")
        return stored

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def get_config(self) -> RagConfig:
        return replace(self._config)

    def update_config(self, **changes) -> RagConfig:
        """Validate and apply *changes*; returns a copy of the new config.

        Raises:
            ConfigError: A changed value is invalid (the old config stays active).
            TypeError: An unknown field name was passed.
        """
        new = RagConfig(**{**asdict(self._config), **changes})
        if self._owns_embedder and new.embedding_model != self._config.embedding_model:
            self._embedder = LiteLLMEmbedder(new.embedding_model)
        self._chunker = self._make_chunker(new)
        self._config = new
        logger.info(f"[RAG] Config updated: {sorted(changes)}")
        return replace(new)
