"""
Shared fixtures for the experience RAG tests.

InMemoryExperienceStore implements ExperienceStore with plain lists so the
retriever, migration, audit and export can be tested without PostgreSQL.
"""

import copy
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
from uuid import uuid4

import pytest

from src.rag.encoding import pack
from src.rag.errors import IndexQueryError, MigrationLockError
from src.rag.models import Experience, LegacyEmbedding, SearchCandidate, embedding_values
from src.rag.similarity import cosine
from src.rag.store import ExperienceStore

DIM = 8
BASE_DATE = datetime(2025, 1, 1, tzinfo=timezone.utc)


def vec(*leading: float) -> List[float]:
    """DIM-length vector starting with the given components."""
    values = [float(v) for v in leading] + [0.0] * (DIM - len(leading))
    return values[:DIM]


def make_experience(
    title: str,
    vector: Optional[List[float]] = None,
    tags=(),
    days: int = 0,
    packed: bool = False,
    legacy: bool = True,
) -> Experience:
    """Experience created ``days`` after BASE_DATE, with legacy and/or packed embedding."""
    exp = Experience(
        id=uuid4(),
        title=title,
        description=f"{title} description",
        content=f"{title} content",
        tags=list(tags),
        created_at=BASE_DATE + timedelta(days=days),
        updated_at=BASE_DATE + timedelta(days=days),
    )
    if vector is not None:
        if legacy:
            exp.legacy_embedding = LegacyEmbedding(list(vector))
        if packed:
            exp.packed_embedding = pack(vector)
    return exp


class InMemoryExperienceStore(ExperienceStore):
    """ExperienceStore kept in process memory."""

    def __init__(self, experiences=None, collection: str = "experiences"):
        self.collection = collection
        self.collections: Dict[str, List[Experience]] = {collection: list(experiences or [])}
        self.indexes: Dict[str, Dict] = {}
        self.backups: List[str] = []
        self.locked = False

        # Failure injection
        self.vector_error: Optional[Exception] = None
        self.vector_delay: float = 0.0
        self.recent_delay: float = 0.0
        self.scan_delay: float = 0.0
        self.backup_error: Optional[Exception] = None
        self.backup_drops_rows: int = 0
        self.fail_write_on = None

        self.vector_search_calls = 0
        self.writes = 0

    @property
    def experiences(self) -> List[Experience]:
        return self.collections[self.collection]

    def _find(self, experience_id) -> Optional[Experience]:
        for exp in self.experiences:
            if exp.id == experience_id:
                return exp
        return None

    def vector_search(self, query_vector, k):
        self.vector_search_calls += 1
        if self.vector_delay:
            time.sleep(self.vector_delay)
        if self.vector_error is not None:
            raise self.vector_error

        scored = []
        for exp in self.experiences:
            if exp.embedding is None:
                continue
            values = embedding_values(exp.embedding)
            if len(values) != len(query_vector):
                raise IndexQueryError("dimension mismatch in index")
            scored.append((copy.copy(exp), cosine(query_vector, values)))

        scored.sort(key=lambda pair: pair[1], reverse=True)
        return [
            SearchCandidate(experience=exp, score=score, rank=rank)
            for rank, (exp, score) in enumerate(scored[:k])
        ]

    def list_recent(self, limit, tags=None):
        if self.recent_delay:
            time.sleep(self.recent_delay)
        rows = [e for e in self.experiences if not tags or e.has_tags(tags)]
        rows.sort(key=lambda e: e.created_at or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        return [copy.copy(e) for e in rows[:limit]]

    def iter_experiences(self, collection=None, batch_size=100):
        if self.scan_delay:
            time.sleep(self.scan_delay)
        for exp in list(self.collections[collection or self.collection]):
            yield copy.copy(exp)

    def count(self, collection=None):
        return len(self.collections[collection or self.collection])

    def create_backup(self, backup_name):
        if self.backup_error is not None:
            raise self.backup_error
        if backup_name in self.collections:
            raise ValueError(f"{backup_name} already exists")
        rows = [copy.deepcopy(e) for e in self.experiences]
        if self.backup_drops_rows:
            rows = rows[:-self.backup_drops_rows]
        self.collections[backup_name] = rows
        self.backups.append(backup_name)
        return len(rows)

    def set_packed_embedding(self, experience_id, packed, updated_at):
        if self.fail_write_on is not None and experience_id == self.fail_write_on:
            raise RuntimeError("write rejected")
        exp = self._find(experience_id)
        if exp is None or exp.packed_embedding is not None:
            return False
        exp.packed_embedding = packed
        exp.updated_at = updated_at
        self.writes += 1
        return True

    def get_experience(self, experience_id):
        exp = self._find(experience_id)
        return copy.copy(exp) if exp else None

    def insert_experience(self, experience):
        if experience.id is None:
            experience.id = uuid4()
        now = datetime.now(timezone.utc)
        experience.created_at = experience.created_at or now
        experience.updated_at = experience.updated_at or now
        self.experiences.append(copy.copy(experience))
        return experience.id

    def update_experience(self, experience):
        for i, exp in enumerate(self.experiences):
            if exp.id == experience.id:
                self.experiences[i] = copy.copy(experience)
                return True
        return False

    @contextmanager
    def migration_lock(self):
        if self.locked:
            raise MigrationLockError(f"Another migration is running on '{self.collection}'")
        self.locked = True
        try:
            yield
        finally:
            self.locked = False

    def create_vector_index(self, name, field="embedding_bin", dimensions=DIM, similarity="cosine"):
        self.indexes[name] = {"field": field, "dimensions": dimensions, "similarity": similarity}

    def drop_vector_index(self, name):
        return self.indexes.pop(name, None) is not None

    def list_vector_indexes(self):
        return [{"name": name, "definition": str(definition)} for name, definition in sorted(self.indexes.items())]


class FakeEmbedder:
    """Embedder returning fixed vectors per text."""

    def __init__(self, vectors=None, default=None, error: Optional[Exception] = None, delay: float = 0.0):
        self.vectors = dict(vectors or {})
        self.default = default if default is not None else vec(1.0)
        self.error = error
        self.delay = delay
        self.calls: List[str] = []
        self.total_tokens = 0
        self.estimated_cost = 0.0

    def embed_query(self, text):
        self.calls.append(text)
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return list(self.vectors.get(text, self.default))


@pytest.fixture
def store():
    """Four experiences with distinct directions, tags and dates."""
    return InMemoryExperienceStore([
        make_experience("Scaling Kafka", vec(1.0, 0.1), tags=["kafka", "aws"], days=1),
        make_experience("Leading an incident", vec(0.2, 1.0), tags=["leadership"], days=5),
        make_experience("Migrating to AWS", vec(0.9, 0.4), tags=["aws"], days=3),
        make_experience("Mentoring juniors", vec(0.0, 0.3, 1.0), tags=["leadership", "mentoring"], days=7),
    ])


@pytest.fixture
def embedder():
    return FakeEmbedder()
