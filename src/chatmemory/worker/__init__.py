"""chatmemory background embedding worker."""

from chatmemory.worker.embedding_worker import (
    EmbeddingWorker,
    ThreadTicker,
    WorkerStats,
)

__all__ = [
    "EmbeddingWorker",
    "ThreadTicker",
    "WorkerStats",
]
