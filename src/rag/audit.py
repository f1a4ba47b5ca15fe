"""
RAG Embedding Audit
===================

Validates stored embeddings so vector search stays consistent:
missing or placeholder embeddings, wrong dimensions, zero or non-finite
values, unusual magnitudes, malformed packed blobs and packed/legacy drift.
"""

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .encoding import unpack
from .errors import FormatError
from .migration import ROUND_TRIP_MIN_COSINE
from .models import EMBEDDING_DIMENSIONS, Experience
from .similarity import cosine
from .store import ExperienceStore

logger = logging.getLogger(__name__)

# Provider embeddings are normalised; anything far from 1.0 is suspect
MIN_MAGNITUDE = 0.1
MAX_MAGNITUDE = 10.0


@dataclass
class AuditReport:
    """Result of an embedding audit."""
    total: int = 0
    valid: int = 0
    invalid: int = 0
    issues: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return (self.valid / self.total * 100) if self.total else 100.0


def _check_values(values: List[float], dimensions: int, label: str) -> List[str]:
    if not values:
        return [f"Empty {label} embedding"]
    if len(values) == 1 and values[0] == 0:
        return [f"Placeholder {label} embedding detected ([0])"]
    if len(values) != dimensions:
        return [f"Incorrect {label} dimensions: {len(values)}, expected {dimensions}"]
    if any(not math.isfinite(v) for v in values):
        return [f"{label.capitalize()} embedding contains NaN or infinite values"]
    if all(v == 0 for v in values):
        return [f"All {label} embedding values are zero"]

    magnitude = math.sqrt(sum(v * v for v in values))
    if magnitude < MIN_MAGNITUDE or magnitude > MAX_MAGNITUDE:
        return [f"Unusual {label} embedding magnitude: {magnitude:.4f} (expected ~1.0)"]
    return []


def audit_experience(experience: Experience, dimensions: int = EMBEDDING_DIMENSIONS) -> List[str]:
    """List the problems of one experience's embeddings (empty if valid)."""
    legacy = experience.legacy_embedding
    packed = experience.packed_embedding

    if legacy is None and packed is None:
        return ["Missing embedding field"]

    issues: List[str] = []
    legacy_values = None
    packed_values = None

    if legacy is not None:
        legacy_values = list(legacy.values)
        issues.extend(_check_values(legacy_values, dimensions, "legacy"))

    if packed is not None:
        try:
            packed_values = unpack(packed, dimensions=dimensions)
        except FormatError as e:
            issues.append(f"Malformed packed embedding: {e.message}")
        else:
            issues.extend(_check_values(packed_values, dimensions, "packed"))

    if not issues and legacy_values is not None and packed_values is not None:
        if cosine(legacy_values, packed_values) < ROUND_TRIP_MIN_COSINE:
            issues.append("Packed embedding drifted from legacy embedding")

    return issues


def audit_collection(
    store: ExperienceStore,
    dimensions: int = EMBEDDING_DIMENSIONS,
    batch_size: int = 100,
) -> AuditReport:
    """Audit every experience of the store's collection."""
    report = AuditReport()

    for experience in store.iter_experiences(batch_size=batch_size):
        report.total += 1
        problems = audit_experience(experience, dimensions)
        if problems:
            report.invalid += 1
            report.issues.append({
                "experience_id": str(experience.id) if experience.id else None,
                "title": experience.title,
                "issues": problems,
            })
            logger.warning(f"{experience.title}: {', '.join(problems)}")
        else:
            report.valid += 1

    logger.info(
        f"Embedding audit: {report.valid}/{report.total} valid "
        f"({report.success_rate:.1f}%), {report.invalid} invalid"
    )
    return report
