"""Vector helpers for the retrieval cache."""

from __future__ import annotations


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero or differently sized vectors."""
    if not a or len(a) != len(b):
        return 0.0
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def weighted_average(vectors: list[tuple[list[float], float]]) -> list[float]:
    """Average equal-length vectors by weight. Empty input returns []."""
    if not vectors:
        return []
    dims = len(vectors[0][0])
    total = sum(w for _, w in vectors)
    if total == 0:
        return [0.0] * dims
    result = [0.0] * dims
    for vec, weight in vectors:
        for i in range(dims):
            result[i] += vec[i] * weight
    return [x / total for x in result]
