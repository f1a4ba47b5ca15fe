"""
RAG Experience Store
====================

Storage and vector index access for experiences.

ExperienceStore is the boundary the retriever, the migration and the
ingestion path depend on. PostgresExperienceStore implements it with
psycopg2 and pgvector:

- filtered queries by exact tag match (``tags @> ...``)
- ANN search over ``experience_vector(embedding_bin, ..., embedding)``,
  i.e. the packed column when populated and the legacy array otherwise
- creation/removal of named HNSW indexes
"""

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
from uuid import UUID, uuid4

import psycopg2
from psycopg2 import errors as pg_errors
from psycopg2 import sql
from psycopg2.extras import RealDictCursor

from .config import validate_identifier
from .database import ExperienceDatabase
from .errors import IndexQueryError, IndexUnsupportedError, MigrationLockError
from .models import (
    EMBEDDING_DIMENSIONS,
    Experience,
    LegacyEmbedding,
    PackedEmbedding,
    SearchCandidate,
)

logger = logging.getLogger(__name__)


# Similarity metric -> pgvector operator class
SIMILARITY_OPS = {
    "cosine": "vector_cosine_ops",
    "euclidean": "vector_l2_ops",
    "dotproduct": "vector_ip_ops",
}

# Fields a vector index can target
VECTOR_FIELDS = ("embedding_bin", "embedding")


class ExperienceStore(ABC):
    """Persistence and vector search for experiences."""

    collection: str

    @abstractmethod
    def vector_search(self, query_vector: List[float], k: int) -> List[SearchCandidate]:
        """Top-k experiences by cosine similarity, most similar first."""

    @abstractmethod
    def list_recent(self, limit: int, tags: Optional[List[str]] = None) -> List[Experience]:
        """Most recent experiences, optionally restricted to those having all tags."""

    @abstractmethod
    def iter_experiences(
        self,
        collection: Optional[str] = None,
        batch_size: int = 100,
    ) -> Iterator[Experience]:
        """Stream every experience of a collection without loading it whole."""

    @abstractmethod
    def count(self, collection: Optional[str] = None) -> int:
        """Number of experiences in a collection."""

    @abstractmethod
    def create_backup(self, backup_name: str) -> int:
        """Copy the collection verbatim into ``backup_name``; returns rows copied."""

    @abstractmethod
    def set_packed_embedding(
        self,
        experience_id: UUID,
        packed: PackedEmbedding,
        updated_at: datetime,
    ) -> bool:
        """Write the packed field if it is still empty; True if written."""

    @abstractmethod
    def get_experience(self, experience_id: UUID) -> Optional[Experience]:
        """Fetch one experience with its embeddings."""

    @abstractmethod
    def insert_experience(self, experience: Experience) -> UUID:
        """Insert a new experience, returning its id."""

    @abstractmethod
    def update_experience(self, experience: Experience) -> bool:
        """Overwrite text, tags and both embeddings of an experience."""

    @abstractmethod
    @contextmanager
    def migration_lock(self):
        """Exclusive lock held for the duration of a migration run."""

    @abstractmethod
    def create_vector_index(
        self,
        name: str,
        field: str = "embedding_bin",
        dimensions: int = EMBEDDING_DIMENSIONS,
        similarity: str = "cosine",
    ) -> None:
        """Create a named ANN index."""

    @abstractmethod
    def drop_vector_index(self, name: str) -> bool:
        """Remove a named ANN index; False if it did not exist."""

    @abstractmethod
    def list_vector_indexes(self) -> List[Dict[str, Any]]:
        """Describe the ANN indexes on the collection."""


_COLUMNS = (
    "id", "title", "description", "content", "tags",
    "embedding", "embedding_bin", "embedding_bin_subtype",
    "created_at", "updated_at",
)

# Columns returned by searches (no embeddings)
_SEARCH_COLUMNS = ("id", "title", "description", "content", "tags", "created_at", "updated_at")


def _as_uuid(value) -> Optional[UUID]:
    if value is None or isinstance(value, UUID):
        return value
    return UUID(str(value))


def row_to_experience(row: Dict[str, Any]) -> Experience:
    """Build an Experience from a RealDictCursor row."""
    legacy = row.get("embedding")
    packed = row.get("embedding_bin")

    return Experience(
        id=_as_uuid(row.get("id")),
        title=row.get("title") or "",
        description=row.get("description") or "",
        content=row.get("content") or "",
        tags=list(row.get("tags") or []),
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        legacy_embedding=LegacyEmbedding([float(v) for v in legacy]) if legacy is not None else None,
        packed_embedding=(
            PackedEmbedding(bytes(packed), row.get("embedding_bin_subtype"))
            if packed is not None else None
        ),
    )


class PostgresExperienceStore(ExperienceStore):
    """
    ExperienceStore backed by PostgreSQL + pgvector.

    Every statement runs in its own short transaction on a connection
    borrowed from the ExperienceDatabase pool. With ``statement_timeout``
    (seconds) set, read queries are cancelled server-side at that deadline,
    so a query abandoned by the caller gives its connection back.
    """

    def __init__(
        self,
        database: ExperienceDatabase,
        collection: str = "experiences",
        dimensions: int = EMBEDDING_DIMENSIONS,
        statement_timeout: Optional[float] = None,
    ):
        if statement_timeout is not None and statement_timeout <= 0:
            raise ValueError("statement_timeout must be positive")
        self.db = database
        self.collection = validate_identifier(collection, "collection name")
        self.dimensions = dimensions
        self.statement_timeout = statement_timeout

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _table(self, collection: Optional[str] = None) -> sql.Identifier:
        return sql.Identifier(validate_identifier(collection or self.collection, "collection name"))

    def _vector_expr(self) -> sql.Composed:
        return sql.SQL(
            "experience_vector(embedding_bin, embedding_bin_subtype, embedding)::vector({dims})"
        ).format(dims=sql.Literal(int(self.dimensions)))

    def _limit_statement(self, conn) -> None:
        """Bound the read queries of the current transaction."""
        if self.statement_timeout is None:
            return
        with conn.cursor() as cur:
            cur.execute("SET LOCAL statement_timeout = %s", (int(self.statement_timeout * 1000),))

    @staticmethod
    def _translate_index_error(e: psycopg2.Error) -> Exception:
        """Map pgvector failures onto the index error taxonomy."""
        if isinstance(e, (pg_errors.UndefinedFunction, pg_errors.UndefinedObject, pg_errors.FeatureNotSupported)):
            return IndexUnsupportedError(f"Vector search not available: {e.pgerror or e}")
        return IndexQueryError(f"Vector search failed: {e.pgerror or e}")

    # ------------------------------------------------------------------
    # Retrieval
    # ------------------------------------------------------------------

    def vector_search(self, query_vector: List[float], k: int) -> List[SearchCandidate]:
        vector_expr = self._vector_expr()
        query = sql.SQL("""
            SELECT {columns},
                   1 - ({vector} <=> %(query)s::vector) AS score
            FROM {table}
            WHERE experience_vector(embedding_bin, embedding_bin_subtype, embedding) IS NOT NULL
            ORDER BY {vector} <=> %(query)s::vector
            LIMIT %(k)s
        """).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, _SEARCH_COLUMNS)),
            vector=vector_expr,
            table=self._table(),
        )

        try:
            with self.db.transaction() as conn:
                self._limit_statement(conn)
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, {"query": list(query_vector), "k": int(k)})
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            raise self._translate_index_error(e) from e

        candidates = []
        for rank, row in enumerate(rows):
            score = row.get("score")
            candidates.append(SearchCandidate(
                experience=row_to_experience(row),
                score=float(score) if score is not None else None,
                rank=rank,
            ))

        logger.debug(f"Vector search returned {len(candidates)} candidates (k={k})")
        return candidates

    def list_recent(self, limit: int, tags: Optional[List[str]] = None) -> List[Experience]:
        where = sql.SQL("")
        params: Dict[str, Any] = {"limit": int(limit)}
        if tags:
            where = sql.SQL("WHERE tags @> %(tags)s::text[]")
            params["tags"] = list(tags)

        query = sql.SQL("""
            SELECT {columns}
            FROM {table}
            {where}
            ORDER BY created_at DESC NULLS LAST
            LIMIT %(limit)s
        """).format(
            columns=sql.SQL(", ").join(map(sql.Identifier, _SEARCH_COLUMNS)),
            table=self._table(),
            where=where,
        )

        try:
            with self.db.transaction() as conn:
                self._limit_statement(conn)
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(query, params)
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            raise IndexQueryError(f"Listing recent experiences failed: {e.pgerror or e}") from e

        return [row_to_experience(row) for row in rows]

    # ------------------------------------------------------------------
    # Collection access
    # ------------------------------------------------------------------

    def iter_experiences(
        self,
        collection: Optional[str] = None,
        batch_size: int = 100,
    ) -> Iterator[Experience]:
        """
        Stream rows through a server-side cursor.

        The cursor keeps its own pooled connection for the whole scan, so
        writes made while iterating go through other connections.
        """
        query = sql.SQL("SELECT {columns} FROM {table} ORDER BY created_at, id").format(
            columns=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
            table=self._table(collection),
        )

        with self.db.get_connection() as conn:
            cur = conn.cursor(name=f"iter_{uuid4().hex[:12]}", cursor_factory=RealDictCursor)
            cur.itersize = batch_size
            try:
                self._limit_statement(conn)
                cur.execute(query)
                for row in cur:
                    yield row_to_experience(row)
            finally:
                cur.close()
                if not conn.closed:
                    conn.rollback()

    def count(self, collection: Optional[str] = None) -> int:
        query = sql.SQL("SELECT COUNT(*) FROM {table}").format(table=self._table(collection))
        with self.db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query)
                return int(cur.fetchone()[0])

    def create_backup(self, backup_name: str) -> int:
        query = sql.SQL("CREATE TABLE {backup} AS TABLE {source}").format(
            backup=self._table(backup_name),
            source=self._table(),
        )
        with self.db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query)
                copied = cur.rowcount

        logger.info(f"Backup table {backup_name} created ({copied} rows)")
        return copied

    def set_packed_embedding(
        self,
        experience_id: UUID,
        packed: PackedEmbedding,
        updated_at: datetime,
    ) -> bool:
        query = sql.SQL("""
            UPDATE {table}
            SET embedding_bin = %s, embedding_bin_subtype = %s, updated_at = %s
            WHERE id = %s AND embedding_bin IS NULL
        """).format(table=self._table())

        with self.db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (
                    psycopg2.Binary(packed.data),
                    packed.subtype,
                    updated_at,
                    str(experience_id),
                ))
                return cur.rowcount > 0

    def get_experience(self, experience_id: UUID) -> Optional[Experience]:
        query = sql.SQL("SELECT {columns} FROM {table} WHERE id = %s").format(
            columns=sql.SQL(", ").join(map(sql.Identifier, _COLUMNS)),
            table=self._table(),
        )
        with self.db.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, (str(experience_id),))
                row = cur.fetchone()

        return row_to_experience(row) if row else None

    def insert_experience(self, experience: Experience) -> UUID:
        if experience.id is None:
            experience.id = uuid4()

        legacy = experience.legacy_embedding
        packed = experience.packed_embedding
        query = sql.SQL("""
            INSERT INTO {table} (
                id, title, description, content, tags,
                embedding, embedding_bin, embedding_bin_subtype,
                created_at, updated_at
            ) VALUES (
                %s, %s, %s, %s, %s,
                %s, %s, %s,
                COALESCE(%s, NOW()), COALESCE(%s, NOW())
            )
            RETURNING created_at, updated_at
        """).format(table=self._table())

        with self.db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (
                    str(experience.id),
                    experience.title,
                    experience.description,
                    experience.content,
                    list(experience.tags or []),
                    list(legacy.values) if legacy else None,
                    psycopg2.Binary(packed.data) if packed else None,
                    packed.subtype if packed else None,
                    experience.created_at,
                    experience.updated_at,
                ))
                experience.created_at, experience.updated_at = cur.fetchone()

        logger.info(f"Inserted experience {experience.id}: {experience.title}")
        return experience.id

    def update_experience(self, experience: Experience) -> bool:
        if experience.id is None:
            raise ValueError("Cannot update an experience without id")

        legacy = experience.legacy_embedding
        packed = experience.packed_embedding
        query = sql.SQL("""
            UPDATE {table}
            SET title = %s, description = %s, content = %s, tags = %s,
                embedding = %s, embedding_bin = %s, embedding_bin_subtype = %s,
                updated_at = COALESCE(%s, NOW())
            WHERE id = %s
        """).format(table=self._table())

        with self.db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query, (
                    experience.title,
                    experience.description,
                    experience.content,
                    list(experience.tags or []),
                    list(legacy.values) if legacy else None,
                    psycopg2.Binary(packed.data) if packed else None,
                    packed.subtype if packed else None,
                    experience.updated_at,
                    str(experience.id),
                ))
                return cur.rowcount > 0

    @contextmanager
    def migration_lock(self):
        """
        Session-level advisory lock keyed on the collection name.

        Only excludes other migration runs; ordinary writers are not blocked.
        The lock belongs to a database session, so one pooled connection is
        held from acquisition to release.
        """
        key = f"dense_vector_migration:{self.collection}"
        with self.db.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_try_advisory_lock(hashtext(%s))", (key,))
                acquired = bool(cur.fetchone()[0])
            conn.commit()

            if not acquired:
                raise MigrationLockError(f"Another migration is running on '{self.collection}'")

            try:
                yield
            finally:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
                conn.commit()

    # ------------------------------------------------------------------
    # Index administration
    # ------------------------------------------------------------------

    def create_vector_index(
        self,
        name: str,
        field: str = "embedding_bin",
        dimensions: int = EMBEDDING_DIMENSIONS,
        similarity: str = "cosine",
    ) -> None:
        ops = SIMILARITY_OPS.get(similarity.lower())
        if ops is None:
            raise ValueError(f"Unsupported similarity '{similarity}', expected one of {sorted(SIMILARITY_OPS)}")
        if field not in VECTOR_FIELDS:
            raise ValueError(f"Unsupported vector field '{field}', expected one of {VECTOR_FIELDS}")

        if field == "embedding_bin":
            expr = sql.SQL(
                "experience_vector(embedding_bin, embedding_bin_subtype, embedding)::vector({dims})"
            ).format(dims=sql.Literal(int(dimensions)))
        else:
            expr = sql.SQL("embedding::vector({dims})").format(dims=sql.Literal(int(dimensions)))

        query = sql.SQL("CREATE INDEX {name} ON {table} USING hnsw (({expr}) {ops})").format(
            name=sql.Identifier(validate_identifier(name, "index name")),
            table=self._table(),
            expr=expr,
            ops=sql.SQL(ops),
        )

        try:
            with self.db.transaction() as conn:
                with conn.cursor() as cur:
                    cur.execute(query)
        except psycopg2.Error as e:
            raise self._translate_index_error(e) from e

        logger.info(f"Created vector index {name} on {self.collection}.{field} ({dimensions} dims, {similarity})")

    def drop_vector_index(self, name: str) -> bool:
        existed = any(idx["name"] == name for idx in self.list_vector_indexes())
        query = sql.SQL("DROP INDEX IF EXISTS {name}").format(
            name=sql.Identifier(validate_identifier(name, "index name")),
        )
        with self.db.transaction() as conn:
            with conn.cursor() as cur:
                cur.execute(query)

        if existed:
            logger.info(f"Dropped vector index {name}")
        return existed

    def list_vector_indexes(self) -> List[Dict[str, Any]]:
        with self.db.transaction() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT indexname, indexdef
                    FROM pg_indexes
                    WHERE tablename = %s
                      AND (indexdef ILIKE '%%USING hnsw%%' OR indexdef ILIKE '%%USING ivfflat%%')
                    ORDER BY indexname
                """, (self.collection,))
                rows = cur.fetchall()

        return [{"name": row["indexname"], "definition": row["indexdef"]} for row in rows]
