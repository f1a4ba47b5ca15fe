"""
RAG Database Session
====================

Explicit PostgreSQL session object with an open/close lifecycle, backed by
a psycopg2 ThreadedConnectionPool.

Constructed once by the entry point (CLI, migration script, API lifespan)
and passed to every store, instead of a process-wide connection. Each
transaction borrows its own pooled connection, so concurrent requests
do not wait on one another.

Usage:
    with ExperienceDatabase(settings.database) as db:
        store = PostgresExperienceStore(db)
        ...
"""

import logging
from contextlib import contextmanager
from typing import Optional

from psycopg2 import pool as pg_pool

from .config import DatabaseConfig

logger = logging.getLogger(__name__)


class ExperienceDatabase:
    """A psycopg2 connection pool with explicit lifecycle."""

    def __init__(
        self,
        config: Optional[DatabaseConfig] = None,
        pool_factory=pg_pool.ThreadedConnectionPool,
    ):
        self.config = config or DatabaseConfig()
        self._pool_factory = pool_factory
        self._pool = None

    def open(self) -> "ExperienceDatabase":
        """Create the connection pool. Idempotent."""
        if not self.is_open:
            params = self.config.connection_dict
            self._pool = self._pool_factory(self.config.pool_min, self.config.pool_max, **params)
            logger.info(
                f"DB pool created ({self.config.pool_min}-{self.config.pool_max} connections): "
                + ("DATABASE_URL" if self.config.url else f"{self.config.host}:{self.config.port}/{self.config.name}")
            )
        return self

    def close(self) -> None:
        """Close every pooled connection. Idempotent."""
        if self.is_open:
            self._pool.closeall()
            logger.info("DB pool closed")
        self._pool = None

    @property
    def is_open(self) -> bool:
        return self._pool is not None and not self._pool.closed

    @contextmanager
    def get_connection(self):
        """
        Borrow a connection from the pool (context manager).

        Broken connections are discarded instead of being put back.
        """
        if not self.is_open:
            raise ConnectionError("Database pool is not open")
        pool = self._pool
        conn = pool.getconn()
        try:
            yield conn
        finally:
            pool.putconn(conn, close=bool(conn.closed))

    @contextmanager
    def transaction(self):
        """Borrow a connection; commit on success, roll back on error."""
        with self.get_connection() as conn:
            try:
                yield conn
                conn.commit()
            except Exception:
                if not conn.closed:
                    conn.rollback()
                raise

    def __enter__(self) -> "ExperienceDatabase":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
