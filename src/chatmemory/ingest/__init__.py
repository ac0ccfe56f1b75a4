"""chatmemory ingest pipeline — message-window chunking."""

from chatmemory.ingest.chunker import MessageChunk, TextChunker

__all__ = [
    "MessageChunk",
    "TextChunker",
]
