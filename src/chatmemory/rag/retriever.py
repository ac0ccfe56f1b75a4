"""Retrieval result model and context formatting.

Ranking: similarity descending, ties broken by higher chunk index (the more
recent chunk wins). Message ids are deduplicated in first-seen order across
the ranked chunks.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from chatmemory.db.models import Message, SearchResult


@dataclass
class RetrievalResult:
    """Outcome of one retrieval call.

    Attributes:
        relevant_chunks: Ranked search results, best-first.
        message_ids: Deduplicated ids across all chunks, first-seen order.
        relevant_messages: Messages resolved from the history store, when it
            supports lookup by id.
        context_text: Formatted blocks ready to hand to a prompt builder.
        total_chunks: Number of chunks returned.
        avg_similarity: Mean similarity of the returned chunks (0 if none).
        retrieval_time_ms: Wall time spent embedding and searching.
    """

    relevant_chunks: list[SearchResult] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    relevant_messages: list[Message] = field(default_factory=list)
    context_text: str = ""
    total_chunks: int = 0
    avg_similarity: float = 0.0
    retrieval_time_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.relevant_chunks


def rank_results(results: list[SearchResult]) -> list[SearchResult]:
    return sorted(results, key=lambda r: (-r.similarity, -r.record.chunk_index))


def dedupe_message_ids(results: list[SearchResult]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for result in results:
        for mid in result.record.message_ids:
            if mid not in seen:
                seen.add(mid)
                ordered.append(mid)
    return ordered


def format_retrieved_context(results: list[SearchResult]) -> str:
    """Render one header + text block per chunk, separated by blank lines."""
    blocks = []
    for n, result in enumerate(results, start=1):
        record = result.record
        pct = round(result.similarity * 100)
        header = (
            f"--- Relevant Context {n} ({pct}% relevant, "
            f"{record.timestamp_start.isoformat()} to {record.timestamp_end.isoformat()}) ---"
        )
        blocks.append(f"{header}\n{record.chunk_text}")
    return "\n\n".join(blocks)
