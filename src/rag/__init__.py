"""
Experience RAG Module
=====================

Retrieval over a knowledge base of written experiences.

Components:
- Encoding: compact float32 dense vector format (binary subtype 0x81)
- Similarity: in-process cosine for verification and fallback ranking
- Retrieval: embed query -> ANN candidates -> tag filter -> sort -> limit
- Migration: backup + streamed legacy-to-packed embedding conversion

Architecture:
- PostgreSQL + pgvector for storage and ANN search
- OpenAI text-embedding-3-small for embeddings
"""

from .embedder import RAGEmbedder
from .encoding import pack, unpack
from .similarity import cosine, rank_by_cosine
from .retriever import ExperienceRetriever
from .ingestion import ExperienceIngestion
from .migration import DenseVectorMigration
from .store import ExperienceStore, PostgresExperienceStore
from .database import ExperienceDatabase
from .errors import (
    RAGError,
    FormatError,
    DimensionMismatch,
    ProviderError,
    IndexUnsupportedError,
    IndexQueryError,
    MigrationError,
    MigrationLockError,
    MigrationBackupError,
    MigrationWriteError,
)
from .models import (
    Experience,
    LegacyEmbedding,
    PackedEmbedding,
    SearchResult,
    SimilarMatch,
    SortMode,
    MigrationReport,
)

__all__ = [
    "RAGEmbedder",
    "pack",
    "unpack",
    "cosine",
    "rank_by_cosine",
    "ExperienceRetriever",
    "ExperienceIngestion",
    "DenseVectorMigration",
    "ExperienceStore",
    "PostgresExperienceStore",
    "ExperienceDatabase",
    "RAGError",
    "FormatError",
    "DimensionMismatch",
    "ProviderError",
    "IndexUnsupportedError",
    "IndexQueryError",
    "MigrationError",
    "MigrationLockError",
    "MigrationBackupError",
    "MigrationWriteError",
    "Experience",
    "LegacyEmbedding",
    "PackedEmbedding",
    "SearchResult",
    "SimilarMatch",
    "SortMode",
    "MigrationReport",
]
