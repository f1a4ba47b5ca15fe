"""
RAG Errors
==========

Exception taxonomy for encoding, retrieval and migration.

Callers decide user-facing messaging; these types only say what failed.
"""

from typing import Optional


class RAGError(Exception):
    """Base exception for the RAG package."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


class FormatError(RAGError):
    """Packed vector blob is malformed (bad length or subtype)."""
    pass


class DimensionMismatch(RAGError):
    """Two vectors that must have the same length do not."""

    def __init__(self, left: int, right: int):
        self.left = left
        self.right = right
        super().__init__(f"Vector length mismatch: {left} != {right}")


class ProviderError(RAGError):
    """Embedding generation failed or timed out."""
    pass


class IndexUnsupportedError(RAGError):
    """The storage engine has no vector search capability."""
    pass


class IndexQueryError(RAGError):
    """Vector search failed for a reason other than missing capability."""
    pass


class MigrationError(RAGError):
    """Base exception for the dense vector migration."""
    pass


class MigrationLockError(MigrationError):
    """Another migration run holds the lock for this collection."""
    pass


class MigrationBackupError(MigrationError):
    """Backup snapshot could not be created or verified."""

    def __init__(self, message: str, backup_name: Optional[str] = None):
        self.backup_name = backup_name
        super().__init__(message)


class MigrationWriteError(MigrationError):
    """A single experience could not be converted."""

    def __init__(self, message: str, experience_id: Optional[str] = None, processed: int = 0):
        self.experience_id = experience_id
        self.processed = processed
        if experience_id:
            message = f"{message} (experience {experience_id})"
        super().__init__(message)
