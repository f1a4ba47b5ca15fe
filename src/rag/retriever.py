"""
RAG Retriever
=============

Hybrid retrieval over experiences:
1. Embed the query (one provider call)
2. Nearest-neighbour search in the index (top-K candidates with score)
3. Tag filter (AND semantics), applied locally
4. Sort by similarity or date, trim to the requested limit

Stateless: one retriever can serve concurrent requests.
"""

import logging
from collections.abc import Collection
from typing import Any, List, Optional

from .config import RetrievalConfig
from .embedder import RAGEmbedder
from .errors import IndexQueryError, IndexUnsupportedError, ProviderError
from .models import (
    Experience,
    SearchCandidate,
    SearchResult,
    SimilarMatch,
    SortMode,
    embedding_values,
)
from .similarity import rank_by_cosine
from .store import ExperienceStore
from .timeouts import DEFAULT_TIMEOUT_SECONDS, TimeoutGuard

logger = logging.getLogger(__name__)


def normalize_tags(tags: Any) -> Optional[List[str]]:
    """
    Normalize a tag filter.

    Returns None ("no filter") for None, scalars (including a bare string),
    empty collections and collections holding anything but strings.
    """
    if tags is None or isinstance(tags, (str, bytes, dict)):
        return None
    if not isinstance(tags, Collection):
        return None

    items = list(tags)
    if not items or not all(isinstance(t, str) for t in items):
        if items:
            logger.warning(f"Ignoring malformed tag filter: {tags!r}")
        return None

    # Preserve order, drop duplicates
    return list(dict.fromkeys(items))


def filter_by_tags(
    candidates: List[SearchCandidate],
    tags: Optional[List[str]],
) -> List[SearchCandidate]:
    """Keep candidates whose tags include every required tag."""
    if not tags:
        return list(candidates)
    return [c for c in candidates if c.experience.has_tags(tags)]


def order_candidates(candidates: List[SearchCandidate], sort: SortMode) -> List[SearchCandidate]:
    """
    Sort candidates, most relevant/recent first.

    The sort is stable, so ties keep index order. Missing scores or
    dates sort last.
    """
    if sort == SortMode.DATE:
        def key(c: SearchCandidate):
            created = c.experience.created_at
            return (created is not None, created.timestamp() if created else 0.0)
    else:
        def key(c: SearchCandidate):
            return (c.score is not None, c.score if c.score is not None else 0.0)

    ordered = sorted(candidates, key=lambda c: c.rank)
    ordered.sort(key=key, reverse=True)
    return ordered


def _positive_int(value: Any, default: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        return default
    return value


class ExperienceRetriever:
    """
    Retrieves experiences relevant to a query.

    Provider and index calls go through TimeoutGuard; their failures
    surface as ProviderError, IndexUnsupportedError or IndexQueryError.
    """

    def __init__(
        self,
        store: ExperienceStore,
        embedder: Optional[RAGEmbedder] = None,
        config: Optional[RetrievalConfig] = None,
        embedding_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.embedder = embedder or RAGEmbedder()
        self.config = config or RetrievalConfig()

        self._embed = TimeoutGuard(embedding_timeout, ProviderError, "embedding request").wrap(
            self.embedder.embed_query
        )
        self._vector_search = TimeoutGuard(self.config.index_timeout, IndexQueryError, "vector search").wrap(
            self.store.vector_search
        )
        self._list_recent = TimeoutGuard(self.config.index_timeout, IndexQueryError, "recent experiences").wrap(
            self.store.list_recent
        )
        self._scan_locally = TimeoutGuard(self.config.index_timeout, IndexQueryError, "local ranking").wrap(
            self._rank_locally
        )

    def search(
        self,
        query: str,
        tags: Any = None,
        sort: Any = SortMode.SIMILARITY,
        limit: Any = None,
        k: Any = None,
    ) -> List[SearchResult]:
        """
        Search for relevant experiences.

        Args:
            query: Search text; blank text returns the most recent experiences
            tags: Required tags (all must match); malformed input means no filter
            sort: "similarity" (default) or "date"
            limit: Number of results (default from config)
            k: Candidate pool requested from the index (default from config)

        Returns:
            List of SearchResult, possibly empty
        """
        required_tags = normalize_tags(tags)
        sort_mode = SortMode.parse(sort)
        limit = _positive_int(limit, self.config.default_limit)
        k = max(_positive_int(k, self.config.candidate_pool), limit)

        if query is None or not str(query).strip():
            logger.info("Blank query: returning most recent experiences")
            candidates = [
                SearchCandidate(experience=exp, score=None, rank=rank)
                for rank, exp in enumerate(self._list_recent(k, tags=required_tags))
            ]
        else:
            query_vector = self._embed(str(query))
            candidates = self._candidates(query_vector, k)

        filtered = filter_by_tags(candidates, required_tags)
        ordered = order_candidates(filtered, sort_mode)[:limit]

        logger.info(
            f"RAG search returned {len(ordered)} results "
            f"({len(candidates)} candidates, {len(filtered)} after tags, sort={sort_mode.value}) "
            f"for query: {str(query or '')[:50]}"
        )
        return [SearchResult(experience=c.experience, score=c.score) for c in ordered]

    def find_similar(self, text: str, threshold: Optional[float] = None) -> SimilarMatch:
        """
        Best single match for a piece of text.

        Returns SimilarMatch(None, similarity) when the best match is
        below threshold, and SimilarMatch(None, 0.0) for blank text or an
        empty collection.
        """
        threshold = self.config.similar_threshold if threshold is None else threshold
        if text is None or not str(text).strip():
            return SimilarMatch(experience=None, similarity=0.0)

        query_vector = self._embed(str(text))
        candidates = self._candidates(query_vector, 1)
        if not candidates or candidates[0].score is None:
            return SimilarMatch(experience=None, similarity=0.0)

        top = candidates[0]
        logger.debug(f"find_similar: {top.experience.title!r} similarity={top.score:.3f}")
        if top.score < threshold:
            return SimilarMatch(experience=None, similarity=top.score)
        return SimilarMatch(experience=top.experience, similarity=top.score)

    def _candidates(self, query_vector: List[float], k: int) -> List[SearchCandidate]:
        try:
            return self._vector_search(query_vector, k)
        except IndexUnsupportedError:
            if not self.config.local_fallback:
                raise
            logger.warning("Vector search unavailable, ranking experiences in-process")
            return self._scan_locally(query_vector, k)

    def _rank_locally(self, query_vector: List[float], k: int) -> List[SearchCandidate]:
        """Score every stored embedding with the in-process cosine."""

        def vector_of(exp: Experience):
            return embedding_values(exp.embedding) if exp.embedding is not None else None

        ranked = rank_by_cosine(query_vector, self.store.iter_experiences(), vector_of)[:k]

        return [
            SearchCandidate(experience=exp, score=score, rank=rank)
            for rank, (exp, score) in enumerate(ranked)
        ]
