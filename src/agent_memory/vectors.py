"""Vector helpers shared by the semantic store, cache and ranking."""

from __future__ import annotations

import math
import struct


def serialize_embedding(embedding: list[float]) -> bytes:
    """Serialize embedding to bytes for SQLite BLOB storage.

    Args:
        embedding: Embedding vector as list of floats

    Returns:
        Packed bytes (little-endian float32)
    """
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(blob: bytes) -> list[float]:
    """Deserialize embedding from SQLite BLOB.

    Args:
        blob: Packed bytes from SQLite

    Returns:
        Embedding vector as list of floats
    """
    count = len(blob) // 4
    return list(struct.unpack(f"<{count}f", blob))


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity of two vectors; 0.0 for empty, zero or mismatched inputs."""
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)
