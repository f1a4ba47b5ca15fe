"""
Dense Vector Migration
======================

One-time backfill converting every experience from the legacy float64
array embedding to the packed float32 blob (subtype 0x81).

Design principles:
    - SAFE: full backup table created and verified before any write
    - STREAMED: server-side cursor, memory bounded by the batch size
    - IDEMPOTENT: experiences that already have a packed field are skipped
    - NON-DESTRUCTIVE: legacy array is left in place (dual-write)
    - FAIL-FAST: first failing experience halts the run; rerun resumes

Concurrent migrations on the same collection are excluded by the store's
migration lock. Other writers are not blocked; run it during a quiet window.
"""

import logging
import time
from contextlib import closing
from datetime import datetime, timezone
from typing import Callable, Optional, Union
from uuid import uuid4

import numpy as np

from .config import MigrationConfig
from .encoding import pack, to_float32, unpack
from .errors import (
    FormatError,
    MigrationBackupError,
    MigrationError,
    MigrationWriteError,
)
from .logging_config import RunLogger
from .models import (
    EMBEDDING_DIMENSIONS,
    BackupResult,
    Experience,
    MigrationReport,
    PackedEmbedding,
)
from .similarity import cosine
from .store import ExperienceStore

logger = logging.getLogger(__name__)

# Minimum cosine between a legacy array and its packed form
ROUND_TRIP_MIN_COSINE = 0.9999


def backup_name_for(collection: str, now: Optional[datetime] = None) -> str:
    """Timestamp-suffixed backup table name, e.g. experiences_backup_20250601_224915_123456."""
    now = now or datetime.now(timezone.utc)
    return f"{collection}_backup_{now.strftime('%Y%m%d_%H%M%S_%f')}"


def verify_round_trip(values, packed: PackedEmbedding) -> None:
    """
    Check a packed blob against the legacy array it was built from.

    Raises:
        FormatError: if the blob does not decode to the float32 rounding
            of ``values``
    """
    decoded = unpack(packed, dimensions=len(values))
    expected = to_float32(values)
    if not np.array_equal(np.asarray(decoded), np.asarray(expected)):
        raise FormatError("Packed vector does not match the legacy array")
    if np.any(expected) and cosine(values, decoded) < ROUND_TRIP_MIN_COSINE:
        raise FormatError("Packed vector drifted from the legacy array")


class DenseVectorMigration:
    """
    Backup + streamed conversion of legacy embeddings.

    Usage:
        migration = DenseVectorMigration(store)
        report = migration.run()
        report = migration.run(backup_only=True)
    """

    def __init__(
        self,
        store: ExperienceStore,
        dimensions: int = EMBEDDING_DIMENSIONS,
        config: Optional[MigrationConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.dimensions = dimensions
        self.config = config or MigrationConfig()
        self.clock = clock

    def backup(self, log: Union[logging.Logger, RunLogger] = logger) -> BackupResult:
        """
        Snapshot the source collection into a new timestamped table.

        Raises:
            MigrationBackupError: if the copy fails or row counts differ
        """
        source = self.store.collection
        name = backup_name_for(source, self.clock())

        try:
            expected = self.store.count()
            log.info(f"Creating backup {name} of {source} ({expected} experiences)", extra={"backup": name})
            self.store.create_backup(name)
            copied = self.store.count(name)
        except MigrationError:
            raise
        except Exception as e:
            log.error(f"Backup {name} failed: {e}")
            raise MigrationBackupError(f"Backup of '{source}' failed: {e}", backup_name=name) from e

        if copied != expected:
            raise MigrationBackupError(
                f"Backup {name} holds {copied} rows, source had {expected}",
                backup_name=name,
            )

        log.info(f"Backup complete: {name} ({copied} experiences)", extra={"backup": name})
        return BackupResult(name=name, source=source, document_count=copied, created_at=self.clock())

    def run(self, backup_only: bool = False) -> MigrationReport:
        """
        Run the migration.

        Args:
            backup_only: Stop after the verified backup

        Every record logged by the run carries one ``run_id``; the closing
        record also carries ``duration``.

        Returns:
            MigrationReport with counts

        Raises:
            MigrationLockError: another run holds the lock
            MigrationBackupError: backup failed, nothing was modified
            MigrationWriteError: an experience failed; earlier ones stay converted
        """
        started = time.monotonic()
        log = RunLogger(logger, uuid4().hex[:12])
        log.info(f"Migration run {log.run_id} started on {self.store.collection}")

        try:
            with self.store.migration_lock():
                backup = self.backup(log)
                report = MigrationReport(
                    backup_name=backup.name,
                    backup_count=backup.document_count,
                    backup_only=backup_only,
                    run_id=log.run_id,
                )

                if backup_only:
                    log.info("Backup-only mode: no migration performed")
                else:
                    self._convert_all(report, log)
        except MigrationError as e:
            duration = round(time.monotonic() - started, 3)
            log.error(f"Migration run failed after {duration}s: {e}", extra={"duration": duration})
            raise

        report.duration_seconds = round(time.monotonic() - started, 3)
        log.info(
            f"Migration run finished in {report.duration_seconds}s",
            extra={"duration": report.duration_seconds, "processed": report.processed},
        )
        return report

    def _convert_all(self, report: MigrationReport, log: Union[logging.Logger, RunLogger] = logger) -> None:
        rows = self.store.iter_experiences(batch_size=self.config.cursor_batch_size)
        with closing(rows):
            for experience in rows:
                if self._convert_one(experience, report.processed, log):
                    report.converted += 1
                else:
                    report.skipped += 1
                report.processed += 1

                if report.processed % self.config.progress_every == 0:
                    log.info(f"Processed {report.processed}", extra={"processed": report.processed})

        log.info(
            f"Migration finished: total {report.processed} "
            f"(converted {report.converted}, skipped {report.skipped})",
            extra={"processed": report.processed, "backup": report.backup_name},
        )

    def _convert_one(
        self,
        experience: Experience,
        processed: int,
        log: Union[logging.Logger, RunLogger] = logger,
    ) -> bool:
        """Pack and write one experience. False if it needed no conversion."""
        if experience.packed_embedding is not None:
            return False

        experience_id = str(experience.id) if experience.id else None
        legacy = experience.legacy_embedding

        if legacy is None:
            raise MigrationWriteError("No legacy embedding to convert", experience_id, processed)
        if legacy.dimensions != self.dimensions:
            raise MigrationWriteError(
                f"Legacy embedding has {legacy.dimensions} dimensions, expected {self.dimensions}",
                experience_id,
                processed,
            )

        try:
            packed = pack(legacy.values)
            if self.config.verify:
                verify_round_trip(legacy.values, packed)
            written = self.store.set_packed_embedding(experience.id, packed, self.clock())
        except Exception as e:
            log.error(f"Conversion failed after {processed} experiences: {e}", extra={"experience_id": experience_id})
            raise MigrationWriteError(f"Conversion failed: {e}", experience_id, processed) from e

        if not written:
            log.debug(f"Experience {experience_id} gained a packed field concurrently; skipped")
        return written
