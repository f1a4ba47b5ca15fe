"""
RAG Ingestion
=============

Write path for experiences.

New experiences are embedded once and stored in both representations:
the legacy float64 array (still read by older code) and the packed
float32 blob the index prefers. Editing the text regenerates both.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from .embedder import RAGEmbedder
from .encoding import pack
from .models import Experience, LegacyEmbedding
from .errors import ProviderError
from .store import ExperienceStore
from .timeouts import DEFAULT_TIMEOUT_SECONDS, TimeoutGuard

logger = logging.getLogger(__name__)


def embedding_text(experience: Experience) -> str:
    """Text sent to the embedding provider for an experience."""
    parts = [experience.title, experience.description, experience.content]
    return "\n\n".join(p.strip() for p in parts if p and p.strip())


class ExperienceIngestion:
    """
    Creates and re-embeds experiences.

    Handles:
    - Embedding generation (one provider call per experience)
    - Dual representation (legacy array + packed blob)
    - Persistence through an ExperienceStore
    """

    def __init__(
        self,
        store: ExperienceStore,
        embedder: Optional[RAGEmbedder] = None,
        embedding_timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.embedder = embedder or RAGEmbedder()
        self._embed = TimeoutGuard(embedding_timeout, ProviderError, "embedding request").wrap(
            self.embedder.embed_query
        )

        self._ingested = 0
        self._reembedded = 0

    def _attach_embeddings(self, experience: Experience) -> None:
        vector = self._embed(embedding_text(experience))
        experience.legacy_embedding = LegacyEmbedding(list(vector))
        experience.packed_embedding = pack(vector)

    def ingest(
        self,
        title: str,
        content: str,
        description: str = "",
        tags: Optional[List[str]] = None,
    ) -> UUID:
        """
        Embed and store a new experience.

        Returns:
            UUID of the created experience

        Raises:
            ValueError: if title or content is empty
            ProviderError: if embedding generation fails
        """
        if not title or not title.strip():
            raise ValueError("Experience title is required")
        if not content or not content.strip():
            raise ValueError("Experience content is required")

        experience = Experience(
            title=title.strip(),
            description=(description or "").strip(),
            content=content.strip(),
            tags=[t.strip() for t in (tags or []) if t and t.strip()],
        )
        self._attach_embeddings(experience)

        experience_id = self.store.insert_experience(experience)
        self._ingested += 1
        return experience_id

    def reembed(
        self,
        experience_id: UUID,
        title: Optional[str] = None,
        description: Optional[str] = None,
        content: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Optional[Experience]:
        """
        Apply text edits to an experience and regenerate both embeddings.

        Returns:
            The updated Experience, or None if it does not exist
        """
        experience = self.store.get_experience(experience_id)
        if experience is None:
            logger.warning(f"Experience {experience_id} not found")
            return None

        if title is not None:
            experience.title = title.strip()
        if description is not None:
            experience.description = description.strip()
        if content is not None:
            experience.content = content.strip()
        if tags is not None:
            experience.tags = [t.strip() for t in tags if t and t.strip()]

        self._attach_embeddings(experience)
        experience.updated_at = datetime.now(timezone.utc)

        self.store.update_experience(experience)
        self._reembedded += 1
        logger.info(f"Re-embedded experience {experience_id}")
        return experience

    @property
    def stats(self) -> Dict[str, float]:
        """Get ingestion statistics."""
        return {
            "experiences_ingested": self._ingested,
            "experiences_reembedded": self._reembedded,
            "embedding_tokens": self.embedder.total_tokens,
            "embedding_cost_usd": self.embedder.estimated_cost,
        }
