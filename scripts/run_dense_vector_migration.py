#!/usr/bin/env python3
"""
Dense Vector Migration Job
==========================

Converts every experience from the legacy float64 array embedding
(`embedding`) to the packed float32 blob (`embedding_bin`, subtype 0x81).

Steps:
    1. Acquire the per-collection migration lock
    2. Copy the collection to experiences_backup_<timestamp> and verify counts
    3. Stream experiences, pack and write the ones without a packed field

The legacy array is kept, so readers of either field keep working.
A failed run can be restarted: converted experiences are skipped.

Usage:
    python scripts/run_dense_vector_migration.py
    python scripts/run_dense_vector_migration.py --backup-only
    python scripts/run_dense_vector_migration.py --collection experiences --progress-every 50

Environment:
    Reads from .env (DATABASE_URL or DATABASE_HOST, DATABASE_PORT, etc.)

Exit codes:
    0  success
    1  migration failed (backup, lock or conversion error)
"""

import sys
import json
import logging
import argparse
from dataclasses import asdict
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv(project_root / ".env")

import psycopg2
from src.rag.config import MigrationConfig, get_settings
from src.rag.database import ExperienceDatabase
from src.rag.errors import MigrationError, MigrationWriteError
from src.rag.logging_config import setup_logging
from src.rag.migration import DenseVectorMigration
from src.rag.store import PostgresExperienceStore

logger = logging.getLogger(__name__)


def main():
    settings = get_settings()

    parser = argparse.ArgumentParser(
        description="Back up experiences and convert legacy embeddings to packed float32 vectors"
    )
    parser.add_argument(
        "--backup-only", action="store_true",
        help="Create and verify the backup, then stop without converting"
    )
    parser.add_argument(
        "--collection", type=str, default=settings.retrieval.collection,
        help=f"Collection (table) to migrate (default: {settings.retrieval.collection})"
    )
    parser.add_argument(
        "--progress-every", type=int, default=settings.migration.progress_every,
        help=f"Log progress every N experiences (default: {settings.migration.progress_every})"
    )
    parser.add_argument(
        "--batch-size", type=int, default=settings.migration.cursor_batch_size,
        help=f"Server-side cursor batch size (default: {settings.migration.cursor_batch_size})"
    )
    parser.add_argument(
        "--no-verify", action="store_true",
        help="Skip the per-experience round-trip check"
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("--json-logs", action="store_true")
    parser.add_argument("--log-file", type=str, default=settings.logging.log_file)

    args = parser.parse_args()
    setup_logging(
        level="DEBUG" if args.verbose else settings.logging.level,
        json_output=args.json_logs or settings.logging.json_logs,
        log_file=args.log_file,
    )

    try:
        config = MigrationConfig(
            progress_every=args.progress_every,
            cursor_batch_size=args.batch_size,
            verify=settings.migration.verify and not args.no_verify,
        )
    except ValueError as e:
        parser.error(str(e))

    # lock, streaming cursor and writes each hold a pooled connection
    if settings.database.pool_max < 3:
        parser.error("DATABASE_POOL_MAX must be at least 3 for a migration run")

    logger.info("=" * 60)
    logger.info(f"DENSE VECTOR MIGRATION: {args.collection}")
    logger.info("=" * 60)

    try:
        with ExperienceDatabase(settings.database) as db:
            store = PostgresExperienceStore(
                db,
                collection=args.collection,
                dimensions=settings.embedding.dimensions,
            )
            migration = DenseVectorMigration(
                store,
                dimensions=settings.embedding.dimensions,
                config=config,
            )
            report = migration.run(backup_only=args.backup_only)
    except MigrationWriteError as e:
        logger.error(f"Migration halted after {e.processed} experiences: {e.message}")
        logger.error("Already converted experiences are kept; rerun to resume.")
        sys.exit(1)
    except MigrationError as e:
        logger.error(f"Migration failed: {e.message}")
        sys.exit(1)
    except (ValueError, ConnectionError) as e:
        logger.error(f"Migration could not start: {e}")
        sys.exit(1)
    except psycopg2.Error as e:
        logger.error(f"Database error: {str(e).strip()}")
        sys.exit(1)

    logger.info(f"Backup: {report.backup_name} ({report.backup_count} experiences)")
    if report.backup_only:
        logger.info("Backup-only run complete")
    else:
        logger.info(
            f"Converted {report.converted}, skipped {report.skipped}, "
            f"total {report.processed} in {report.duration_seconds}s"
        )
    print(json.dumps(asdict(report), indent=2))
    sys.exit(0)


if __name__ == "__main__":
    main()
