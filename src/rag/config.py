"""
RAG Configuration Module
========================

Centralized configuration management using environment variables.
Supports both .env files and system environment variables.

Environment Variables:
    DATABASE_URL: Full PostgreSQL DSN (takes precedence over the fields below)
    DATABASE_HOST: PostgreSQL host (default: localhost)
    DATABASE_PORT: PostgreSQL port (default: 5432)
    DATABASE_NAME: Database name (default: interview_prep)
    DATABASE_USER: Database user (default: postgres)
    DATABASE_PASSWORD: Database password
    DATABASE_SSL_MODE: SSL mode (default: prefer)
    DATABASE_CONNECT_TIMEOUT: Connect timeout in seconds (default: 10)
    DATABASE_POOL_MIN: Connections opened with the pool (default: 2)
    DATABASE_POOL_MAX: Upper bound on pooled connections (default: 10)

    OPENAI_API_KEY / GPT_API_KEY: Embedding provider key
    EMBEDDING_MODEL: Embedding model (default: text-embedding-3-small)
    EMBEDDING_DIMENSIONS: Vector dimensions (default: 1536)
    EMBEDDING_TIMEOUT: Provider deadline in seconds (default: 30)

    RAG_COLLECTION: Experiences table (default: experiences)
    RAG_INDEX_NAME: Vector index name (default: vector_search)
    RAG_DEFAULT_LIMIT: Results returned per search (default: 5)
    RAG_CANDIDATE_POOL: Candidates requested from the index (default: 100)
    RAG_SIMILAR_THRESHOLD: Minimum similarity for find-similar (default: 0.80)
    RAG_INDEX_TIMEOUT: Index query deadline in seconds (default: 30)
    RAG_LOCAL_FALLBACK: Rank in-process when vector search is missing (default: false)

    MIGRATION_PROGRESS_EVERY: Progress log interval (default: 5)
    MIGRATION_CURSOR_BATCH: Server-side cursor batch size (default: 100)
    MIGRATION_VERIFY: Verify each packed vector after encoding (default: true)
"""

import os
import re
from dataclasses import dataclass, field
from typing import Optional
from pathlib import Path
from dotenv import load_dotenv


# Load environment variables from .env file if present
env_path = Path(__file__).parent.parent.parent / ".env"
if env_path.exists():
    load_dotenv(env_path)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


def get_env(key: str, default: Optional[str] = None, required: bool = False) -> Optional[str]:
    """
    Get environment variable with optional default and required validation.

    Raises:
        ValueError: If required=True and variable is not set
    """
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable '{key}' is not set")
    return value


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as integer."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be an integer, got: {value}")


def get_env_float(key: str, default: float) -> float:
    """Get environment variable as float."""
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable '{key}' must be a float, got: {value}")


def get_env_bool(key: str, default: bool) -> bool:
    """Get environment variable as boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def validate_identifier(name: str, what: str = "identifier") -> str:
    """Reject table/index names that are not plain SQL identifiers."""
    if not name or not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid {what}: {name!r}")
    return name


@dataclass
class DatabaseConfig:
    """PostgreSQL database configuration."""

    url: Optional[str] = field(default_factory=lambda: get_env("DATABASE_URL"))
    host: str = field(default_factory=lambda: get_env("DATABASE_HOST", "localhost"))
    port: int = field(default_factory=lambda: get_env_int("DATABASE_PORT", 5432))
    name: str = field(default_factory=lambda: get_env("DATABASE_NAME", "interview_prep"))
    user: str = field(default_factory=lambda: get_env("DATABASE_USER", "postgres"))
    password: str = field(default_factory=lambda: get_env("DATABASE_PASSWORD", ""))

    # SSL mode: disable, allow, prefer, require, verify-ca, verify-full
    ssl_mode: str = field(default_factory=lambda: get_env("DATABASE_SSL_MODE", "prefer"))
    connect_timeout: int = field(default_factory=lambda: get_env_int("DATABASE_CONNECT_TIMEOUT", 10))

    # ThreadedConnectionPool bounds; a migration run holds three connections at once
    pool_min: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MIN", 2))
    pool_max: int = field(default_factory=lambda: get_env_int("DATABASE_POOL_MAX", 10))

    @property
    def connection_dict(self) -> dict:
        """Connection parameters as dictionary for psycopg2."""
        if self.url:
            return {"dsn": self.url, "connect_timeout": self.connect_timeout}
        return {
            "host": self.host,
            "port": self.port,
            "dbname": self.name,
            "user": self.user,
            "password": self.password,
            "sslmode": self.ssl_mode,
            "connect_timeout": self.connect_timeout,
        }

    def __post_init__(self):
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.pool_min < 0 or self.pool_max < max(self.pool_min, 1):
            raise ValueError("pool bounds must satisfy 0 <= pool_min <= pool_max and pool_max >= 1")


@dataclass
class EmbeddingConfig:
    """Embedding provider configuration."""

    api_key: Optional[str] = field(
        default_factory=lambda: get_env("OPENAI_API_KEY") or get_env("GPT_API_KEY")
    )
    model: str = field(default_factory=lambda: get_env("EMBEDDING_MODEL", "text-embedding-3-small"))
    dimensions: int = field(default_factory=lambda: get_env_int("EMBEDDING_DIMENSIONS", 1536))

    # Deadline for one provider call, in seconds
    timeout: float = field(default_factory=lambda: get_env_float("EMBEDDING_TIMEOUT", 30.0))

    def __post_init__(self):
        if self.dimensions <= 0:
            raise ValueError("dimensions must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")


@dataclass
class RetrievalConfig:
    """Retrieval pipeline configuration."""

    collection: str = field(default_factory=lambda: get_env("RAG_COLLECTION", "experiences"))
    index_name: str = field(default_factory=lambda: get_env("RAG_INDEX_NAME", "vector_search"))

    default_limit: int = field(default_factory=lambda: get_env_int("RAG_DEFAULT_LIMIT", 5))
    candidate_pool: int = field(default_factory=lambda: get_env_int("RAG_CANDIDATE_POOL", 100))
    similar_threshold: float = field(default_factory=lambda: get_env_float("RAG_SIMILAR_THRESHOLD", 0.80))

    # Deadline for one index query, in seconds
    index_timeout: float = field(default_factory=lambda: get_env_float("RAG_INDEX_TIMEOUT", 30.0))
    local_fallback: bool = field(default_factory=lambda: get_env_bool("RAG_LOCAL_FALLBACK", False))

    def __post_init__(self):
        validate_identifier(self.collection, "collection name")
        validate_identifier(self.index_name, "index name")
        if self.default_limit <= 0:
            raise ValueError("default_limit must be positive")
        if self.candidate_pool < self.default_limit:
            raise ValueError("candidate_pool cannot be smaller than default_limit")
        if self.index_timeout <= 0:
            raise ValueError("index_timeout must be positive")


@dataclass
class MigrationConfig:
    """Dense vector migration configuration."""

    progress_every: int = field(default_factory=lambda: get_env_int("MIGRATION_PROGRESS_EVERY", 5))
    cursor_batch_size: int = field(default_factory=lambda: get_env_int("MIGRATION_CURSOR_BATCH", 100))
    verify: bool = field(default_factory=lambda: get_env_bool("MIGRATION_VERIFY", True))

    def __post_init__(self):
        if self.progress_every <= 0:
            raise ValueError("progress_every must be positive")
        if self.cursor_batch_size <= 0:
            raise ValueError("cursor_batch_size must be positive")


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = field(default_factory=lambda: get_env("LOG_LEVEL", "INFO"))
    log_file: Optional[str] = field(default_factory=lambda: get_env("LOG_FILE"))

    # Structured logging
    json_logs: bool = field(default_factory=lambda: get_env_bool("LOG_JSON", False))


@dataclass
class Settings:
    """Main application settings container."""

    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def load_settings() -> Settings:
    """
    Load and validate all application settings.

    Raises:
        ValueError: If required configuration is missing or invalid
    """
    return Settings()


# Global settings instance (lazy-loaded)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (tests, reloaded environments)."""
    global _settings
    _settings = None
