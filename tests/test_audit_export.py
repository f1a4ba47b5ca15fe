"""
Tests for the embedding audit and the collection export.

Usage:
    pytest tests/test_audit_export.py -v
"""

import base64
import json

from src.rag.audit import audit_collection, audit_experience
from src.rag.encoding import pack
from src.rag.export import experience_to_json, export_collection
from src.rag.models import LegacyEmbedding, PackedEmbedding

from conftest import DIM, InMemoryExperienceStore, make_experience, vec


def unit_vector():
    return vec(0.6, 0.8)


# ============================================================================
# AUDIT TESTS
# ============================================================================

class TestAuditExperience:
    """Tests for audit_experience()."""

    def test_valid_dual_representation(self):
        """Matching legacy and packed embeddings have no issues."""
        exp = make_experience("ok", unit_vector(), packed=True)
        assert audit_experience(exp, DIM) == []

    def test_missing_embedding(self):
        """No embedding at all is reported."""
        assert audit_experience(make_experience("bare"), DIM) == ["Missing embedding field"]

    def test_placeholder(self):
        """A [0] placeholder is reported."""
        exp = make_experience("placeholder")
        exp.legacy_embedding = LegacyEmbedding([0])
        assert "Placeholder" in audit_experience(exp, DIM)[0]

    def test_wrong_dimensions(self):
        """Wrong dimension count is reported."""
        exp = make_experience("short")
        exp.legacy_embedding = LegacyEmbedding([0.6, 0.8])
        assert audit_experience(exp, DIM) == [f"Incorrect legacy dimensions: 2, expected {DIM}"]

    def test_zero_vector(self):
        """All-zero values are reported."""
        exp = make_experience("zero", [0.0] * DIM)
        assert "All legacy embedding values are zero" in audit_experience(exp, DIM)

    def test_non_finite(self):
        """NaN values are reported."""
        exp = make_experience("nan", [float("nan")] * DIM)
        assert "NaN" in audit_experience(exp, DIM)[0]

    def test_unusual_magnitude(self):
        """Magnitudes far from 1.0 are reported."""
        exp = make_experience("huge", vec(100.0))
        assert "magnitude" in audit_experience(exp, DIM)[0]

    def test_malformed_packed_blob(self):
        """A truncated packed blob is reported."""
        exp = make_experience("bad", unit_vector())
        exp.packed_embedding = PackedEmbedding(b"\x00" * 6)
        assert audit_experience(exp, DIM)[0].startswith("Malformed packed embedding")

    def test_drift(self):
        """A packed blob from another vector is reported as drift."""
        exp = make_experience("drift", unit_vector())
        exp.packed_embedding = pack(vec(0.8, 0.6))
        assert audit_experience(exp, DIM) == ["Packed embedding drifted from legacy embedding"]


class TestAuditCollection:
    """Tests for audit_collection()."""

    def test_report_counts(self):
        """Counts and issues are aggregated across the collection."""
        store = InMemoryExperienceStore([
            make_experience("ok", unit_vector()),
            make_experience("packed", unit_vector(), packed=True, legacy=False),
            make_experience("bare"),
        ])
        report = audit_collection(store, dimensions=DIM)

        assert (report.total, report.valid, report.invalid) == (3, 2, 1)
        assert report.issues[0]["title"] == "bare"
        assert report.success_rate == 2 / 3 * 100

    def test_empty_collection(self):
        """An empty collection is fully valid."""
        report = audit_collection(InMemoryExperienceStore(), dimensions=DIM)
        assert report.total == 0
        assert report.success_rate == 100.0


# ============================================================================
# EXPORT TESTS
# ============================================================================

class TestExport:
    """Tests for experience_to_json() and export_collection()."""

    def test_packed_as_base64(self):
        """Packed blobs are written as base64 with a hex subtype."""
        exp = make_experience("x", unit_vector(), packed=True)
        data = experience_to_json(exp)

        assert data["embedding"] == unit_vector()
        assert data["embedding_bin"]["subtype"] == "81"
        assert base64.b64decode(data["embedding_bin"]["base64"]) == exp.packed_embedding.data

    def test_missing_embeddings_are_null(self):
        """Absent fields are exported as null."""
        data = experience_to_json(make_experience("bare"))
        assert data["embedding"] is None
        assert data["embedding_bin"] is None

    def test_export_backup_collection(self, tmp_path):
        """A named collection is exported as a JSON array."""
        store = InMemoryExperienceStore([make_experience("a", unit_vector()), make_experience("b")])
        store.collections["experiences_backup_1"] = list(store.experiences[:1])

        out = tmp_path / "backup.json"
        count = export_collection(store, out, collection="experiences_backup_1")

        assert count == 1
        rows = json.loads(out.read_text())
        assert [r["title"] for r in rows] == ["a"]

    def test_export_empty(self, tmp_path):
        """An empty collection exports an empty array."""
        out = tmp_path / "nested" / "empty.json"
        assert export_collection(InMemoryExperienceStore(), out) == 0
        assert json.loads(out.read_text()) == []
