"""
Tests for the embedder and the ingestion write path.

Note: The OpenAI client is mocked; no API calls are made.

Usage:
    pytest tests/test_ingestion.py -v
"""

from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import uuid4

import pytest

from src.rag.config import EmbeddingConfig
from src.rag.embedder import RAGEmbedder
from src.rag.encoding import unpack, to_float32
from src.rag.errors import ProviderError
from src.rag.ingestion import ExperienceIngestion, embedding_text
from src.rag.models import Experience

from conftest import DIM, FakeEmbedder, InMemoryExperienceStore, make_experience, vec


def embedding_response(vector, tokens=12):
    return SimpleNamespace(
        data=[SimpleNamespace(embedding=vector)],
        usage=SimpleNamespace(total_tokens=tokens),
    )


# ============================================================================
# EMBEDDER TESTS
# ============================================================================

class TestRAGEmbedder:
    """Tests for RAGEmbedder with a mocked OpenAI client."""

    def setup_method(self):
        """Set up test fixtures."""
        self.client = MagicMock()
        self.config = EmbeddingConfig(api_key=None, dimensions=DIM)
        self.embedder = RAGEmbedder(self.config, client=self.client)

    def test_requires_key_or_client(self):
        """Without a key or client the embedder cannot be built."""
        with pytest.raises(ValueError):
            RAGEmbedder(EmbeddingConfig(api_key=None))

    def test_embed_query(self):
        """The vector is returned and usage tracked."""
        self.client.embeddings.create.return_value = embedding_response(vec(0.6, 0.8), tokens=30)

        assert self.embedder.embed_query("leading under pressure") == vec(0.6, 0.8)
        assert self.embedder.total_tokens == 30
        assert self.embedder.total_requests == 1
        kwargs = self.client.embeddings.create.call_args[1]
        assert kwargs["model"] == "text-embedding-3-small"
        assert kwargs["dimensions"] == DIM

    def test_empty_text(self):
        """Empty text is rejected before calling the provider."""
        with pytest.raises(ValueError):
            self.embedder.embed("   ")
        self.client.embeddings.create.assert_not_called()

    def test_provider_failure_wrapped(self):
        """Client exceptions become ProviderError."""
        self.client.embeddings.create.side_effect = RuntimeError("rate limited")
        with pytest.raises(ProviderError, match="rate limited"):
            self.embedder.embed("text")

    def test_wrong_dimensions(self):
        """A vector of the wrong size is a provider error."""
        self.client.embeddings.create.return_value = embedding_response([0.1, 0.2])
        with pytest.raises(ProviderError, match="dimensions"):
            self.embedder.embed("text")


# ============================================================================
# INGESTION TESTS
# ============================================================================

class TestIngestion:
    """Tests for ExperienceIngestion."""

    def setup_method(self):
        """Set up test fixtures."""
        self.store = InMemoryExperienceStore()
        self.embedder = FakeEmbedder(default=vec(0.1, 0.2, 0.3))
        self.ingestion = ExperienceIngestion(self.store, embedder=self.embedder, embedding_timeout=5)

    def test_embedding_text(self):
        """Title, description and content are joined."""
        exp = Experience(title="T", description="", content="C")
        assert embedding_text(exp) == "T\n\nC"

    def test_ingest_writes_both_representations(self):
        """New experiences carry the legacy array and the packed blob."""
        experience_id = self.ingestion.ingest("Title", "Body", description="Short", tags=["aws", " ", "kafka"])

        stored = self.store.get_experience(experience_id)
        assert stored.tags == ["aws", "kafka"]
        assert stored.legacy_embedding.values == vec(0.1, 0.2, 0.3)
        assert stored.packed_embedding.subtype == 0x81
        assert unpack(stored.packed_embedding) == to_float32(vec(0.1, 0.2, 0.3))
        assert self.embedder.calls == ["Title\n\nShort\n\nBody"]
        assert self.ingestion.stats["experiences_ingested"] == 1

    @pytest.mark.parametrize("title,content", [("", "body"), ("title", "  ")])
    def test_ingest_requires_text(self, title, content):
        """Title and content are required."""
        with pytest.raises(ValueError):
            self.ingestion.ingest(title, content)

    def test_ingest_provider_failure_writes_nothing(self):
        """No row is inserted if embedding fails."""
        self.embedder.error = ProviderError("down")
        with pytest.raises(ProviderError):
            self.ingestion.ingest("Title", "Body")
        assert self.store.count() == 0

    def test_reembed_regenerates_both(self):
        """Editing content regenerates legacy and packed embeddings."""
        exp = make_experience("Old", vec(1.0), packed=True)
        self.store.experiences.append(exp)
        self.embedder.default = vec(0.0, 1.0)

        updated = self.ingestion.reembed(exp.id, content="New content")

        stored = self.store.get_experience(exp.id)
        assert updated.content == "New content"
        assert stored.legacy_embedding.values == vec(0.0, 1.0)
        assert unpack(stored.packed_embedding) == vec(0.0, 1.0)
        assert stored.updated_at > exp.created_at

    def test_reembed_unknown(self):
        """Unknown ids return None."""
        assert self.ingestion.reembed(uuid4()) is None
