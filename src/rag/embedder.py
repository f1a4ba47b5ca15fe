"""
RAG Embedder
============

Generates embeddings using OpenAI text-embedding-3-small.
1536 dimensions, optimized for cost/latency.

Every provider failure surfaces as ProviderError. Retries and backoff
are left to the caller.
"""

import logging
from typing import List, Optional
from dataclasses import dataclass

from .config import EmbeddingConfig
from .errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResult:
    """Result of embedding generation."""
    embedding: List[float]
    token_count: int
    model: str


class RAGEmbedder:
    """
    Generates embeddings using OpenAI.

    Cost: ~$0.00002 per 1K tokens (text-embedding-3-small)
    Dimensions: 1536
    Max tokens: 8191
    """

    MAX_TOKENS = 8191

    def __init__(self, config: Optional[EmbeddingConfig] = None, client=None):
        self.config = config or EmbeddingConfig()
        self.model = self.config.model
        self.dimensions = self.config.dimensions

        if client is None and not self.config.api_key:
            raise ValueError("OpenAI API key required for embeddings")

        self._client = client
        self._total_tokens = 0
        self._total_requests = 0

    @property
    def client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(api_key=self.config.api_key, timeout=self.config.timeout)
        return self._client

    def embed(self, text: str) -> EmbeddingResult:
        """
        Generate embedding for a single text.

        Args:
            text: Text to embed (max 8191 tokens)

        Returns:
            EmbeddingResult with embedding vector

        Raises:
            ValueError: if text is empty
            ProviderError: if the provider call fails or returns a bad vector
        """
        if not text or not text.strip():
            raise ValueError("Cannot embed empty text")

        try:
            response = self.client.embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
            )
            embedding = list(response.data[0].embedding)
            token_count = response.usage.total_tokens
        except ProviderError:
            raise
        except Exception as e:
            logger.error(f"Embedding request failed: {e}")
            raise ProviderError(f"Embedding generation failed: {e}") from e

        if len(embedding) != self.dimensions:
            raise ProviderError(
                f"Provider returned {len(embedding)} dimensions, expected {self.dimensions}"
            )

        self._total_tokens += token_count
        self._total_requests += 1

        logger.debug(f"Embedded {token_count} tokens")

        return EmbeddingResult(
            embedding=embedding,
            token_count=token_count,
            model=self.model,
        )

    def embed_query(self, query: str) -> List[float]:
        """
        Embed a search query.

        Same as embed() but returns just the vector for convenience.
        """
        return self.embed(query).embedding

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    @property
    def total_requests(self) -> int:
        return self._total_requests

    @property
    def estimated_cost(self) -> float:
        """Estimated cost in USD."""
        # text-embedding-3-small: $0.00002 per 1K tokens
        return (self._total_tokens / 1000) * 0.00002
