"""Exception hierarchy for the conversation memory pipeline.

ProviderError and StoreError are propagated to callers unchanged: a silently
skipped chunk would leave an undetectable gap in a conversation's memory.
ConcurrentProcessingError is the one condition a manual caller receives
instead of a silent skip.
"""

from __future__ import annotations


class ChatMemoryError(Exception):
    """Base class for all chatmemory errors."""


class ProviderError(ChatMemoryError):
    """Embedding computation failed (provider unavailable, quota, bad input)."""


class StoreError(ChatMemoryError):
    """A chunk store or history store read/write failed."""


class ConcurrentProcessingError(ChatMemoryError):
    """Raised when a context is already being indexed in this process."""

    def __init__(self, context_id: str) -> None:
        super().__init__(f"Context '{context_id}' is already being processed")
        self.context_id = context_id
