"""
RAG Data Models
===============

Dataclasses for experiences, their embeddings and search results.

An experience carries its embedding in one or both of two forms:
- LegacyEmbedding: list of float64 values (``embedding double precision[]``)
- PackedEmbedding: little-endian float32 blob tagged 0x81 (``embedding_bin bytea``)
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, Union
from uuid import UUID


# Binary subtype marker for a dense float32 vector
DENSE_VECTOR_FLOAT32 = 0x81

# text-embedding-3-small / ada-002
EMBEDDING_DIMENSIONS = 1536


@dataclass(frozen=True)
class LegacyEmbedding:
    """Embedding stored as an ordered array of float64 values."""
    values: List[float]

    @property
    def dimensions(self) -> int:
        return len(self.values)


@dataclass(frozen=True)
class PackedEmbedding:
    """Embedding stored as consecutive float32 values in a tagged blob."""
    data: bytes
    subtype: int = DENSE_VECTOR_FLOAT32

    @property
    def dimensions(self) -> int:
        return len(self.data) // 4

    def __len__(self) -> int:
        return len(self.data)


EmbeddingField = Union[LegacyEmbedding, PackedEmbedding]


def embedding_values(embedding: EmbeddingField) -> List[float]:
    """
    Decode either embedding variant into a list of floats.

    Raises:
        FormatError: if a packed blob is malformed
        TypeError: for anything that is not an embedding variant
    """
    if isinstance(embedding, PackedEmbedding):
        from .encoding import unpack
        return unpack(embedding)
    if isinstance(embedding, LegacyEmbedding):
        return list(embedding.values)
    raise TypeError(f"Unsupported embedding type: {type(embedding).__name__}")


class SortMode(str, Enum):
    """Result ordering policies."""
    SIMILARITY = "similarity"
    DATE = "date"

    @classmethod
    def parse(cls, value: Any) -> "SortMode":
        """Parse a sort value, falling back to SIMILARITY for anything unknown."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        return cls.SIMILARITY


@dataclass
class Experience:
    """A stored experience (title, text, tags and embedding)."""
    title: str
    description: str
    content: str
    tags: List[str] = field(default_factory=list)

    id: Optional[UUID] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    legacy_embedding: Optional[LegacyEmbedding] = None
    packed_embedding: Optional[PackedEmbedding] = None

    @property
    def embedding(self) -> Optional[EmbeddingField]:
        """Preferred embedding: packed when written, otherwise legacy."""
        if self.packed_embedding is not None:
            return self.packed_embedding
        return self.legacy_embedding

    def has_tags(self, required: List[str]) -> bool:
        """True if every required tag is present (AND semantics)."""
        own = set(self.tags or [])
        return all(tag in own for tag in required)

    def to_dict(self) -> Dict[str, Any]:
        """Document fields without embeddings."""
        return {
            "id": str(self.id) if self.id else None,
            "title": self.title,
            "description": self.description,
            "content": self.content,
            "tags": list(self.tags or []),
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass
class SearchCandidate:
    """An index hit: experience, similarity score and original index position."""
    experience: Experience
    score: Optional[float]
    rank: int = 0


@dataclass
class SearchResult:
    """A ranked result returned to callers."""
    experience: Experience
    score: Optional[float]

    def to_dict(self) -> Dict[str, Any]:
        data = self.experience.to_dict()
        data["score"] = self.score
        return data


@dataclass
class SimilarMatch:
    """Best single match for a piece of text, if above threshold."""
    experience: Optional[Experience]
    similarity: float


@dataclass
class BackupResult:
    """Snapshot created before a migration."""
    name: str
    source: str
    document_count: int
    created_at: datetime


@dataclass
class MigrationReport:
    """Outcome of a dense vector migration run."""
    backup_name: str
    backup_count: int
    processed: int = 0
    converted: int = 0
    skipped: int = 0
    backup_only: bool = False
    duration_seconds: Optional[float] = None
    run_id: str = ""
