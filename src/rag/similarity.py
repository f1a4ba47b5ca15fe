"""
RAG Similarity
==============

Cosine similarity computed in-process.

The index score is the runtime source of truth for ranking; this module
is used to verify packed vectors and for client-side ranking when the
index has no vector search.
"""

import math
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

import numpy as np

from .errors import DimensionMismatch

T = TypeVar("T")


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero magnitude, so no NaN
    ever reaches a ranking comparison.

    Raises:
        DimensionMismatch: if len(a) != len(b)
    """
    if len(a) != len(b):
        raise DimensionMismatch(len(a), len(b))

    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)

    denom = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if denom == 0.0 or not math.isfinite(denom):
        return 0.0

    score = float(np.dot(va, vb) / denom)
    if math.isnan(score):
        return 0.0
    return max(-1.0, min(1.0, score))


def rank_by_cosine(
    query: Sequence[float],
    items: Iterable[T],
    key: Callable[[T], Optional[Sequence[float]]],
) -> List[Tuple[T, float]]:
    """
    Score every item against the query and sort by similarity (descending).

    Items whose key returns None, or a vector of another length, are dropped.
    Ties keep input order.
    """
    scored = []
    for item in items:
        vector = key(item)
        if vector is None:
            continue
        try:
            scored.append((item, cosine(query, vector)))
        except DimensionMismatch:
            continue

    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored

