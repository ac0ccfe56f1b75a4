"""Vector encoding and shape checks for stored chunk embeddings."""

from __future__ import annotations

import struct

from sqlite_vec import serialize_float32


def encode_vector(vector: list[float], dimensions: int = 0) -> bytes:
    """Return *vector* as a float32 blob accepted by ``vec_distance_cosine``.

    Args:
        vector: Embedding values.
        dimensions: Expected length; 0 skips the length check.

    Raises:
        ValueError: If the vector is empty or has the wrong length.
    """
    if not vector:
        raise ValueError("Cannot store an empty embedding vector")
    if dimensions and len(vector) != dimensions:
        raise ValueError(
            f"Embedding has {len(vector)} dimensions, expected {dimensions}"
        )
    return serialize_float32(vector)


def decode_vector(blob: bytes) -> list[float]:
    """Inverse of encode_vector() (float32 values lose double precision)."""
    count = len(blob) // 4
    return list(struct.unpack(f"{count}f", blob))
