"""Tests for the change detector.

Covers:
- classify_fingerprints() truth table for base/local/remote
- New documents, convergence and ambiguous origin without records
- Deletion and delete/modify detection
- Per-side bases after an interrupted pass
- ChangeDetector reading records from the store
"""

from __future__ import annotations

import itertools
import logging

import pytest

from vault_sync.sync.detector import ChangeDetector, classify_fingerprints
from vault_sync.sync.fingerprint import fingerprint
from vault_sync.sync.models import Classification, Side

V1 = fingerprint(b"v1\n")
V2 = fingerprint(b"v2\n")
V3 = fingerprint(b"v3\n")


class TestClassificationTable:
    """Base B, local L, remote R with a known common ancestor."""

    @pytest.mark.parametrize(
        "local, remote, expected",
        [
            (V1, V1, Classification.UNCHANGED),
            (V2, V1, Classification.LOCAL_ONLY),
            (V1, V2, Classification.REMOTE_ONLY),
            (V2, V2, Classification.CONVERGED),
            (V2, V3, Classification.BOTH_MODIFIED),
        ],
    )
    def test_table(self, local, remote, expected):
        verdict = classify_fingerprints(local, remote, V1, V1)
        assert verdict.classification == expected
        assert verdict.ambiguous_origin is False
        assert verdict.deleted_side is None

    def test_unchanged_iff_all_equal(self):
        """UNCHANGED exactly when L == B == R; BOTH_MODIFIED exactly when
        L != B, R != B and L != R."""
        values = [V1, V2, V3]
        for base, local, remote in itertools.product(values, repeat=3):
            verdict = classify_fingerprints(local, remote, base, base)
            assert (verdict.classification == Classification.UNCHANGED) == (
                local == base == remote
            )
            assert (verdict.classification == Classification.BOTH_MODIFIED) == (
                local != base and remote != base and local != remote
            )


class TestWithoutRecords:
    """Documents never synced before."""

    def test_new_local_document(self):
        assert (
            classify_fingerprints(V1, None, None, None).classification
            == Classification.LOCAL_ONLY
        )

    def test_new_remote_document(self):
        assert (
            classify_fingerprints(None, V1, None, None).classification
            == Classification.REMOTE_ONLY
        )

    def test_identical_new_documents_converge(self):
        verdict = classify_fingerprints(V1, V1, None, None)
        assert verdict.classification == Classification.CONVERGED
        assert verdict.ambiguous_origin is False

    def test_differing_new_documents_are_ambiguous(self):
        verdict = classify_fingerprints(V1, V2, None, None)
        assert verdict.classification == Classification.BOTH_MODIFIED
        assert verdict.ambiguous_origin is True


class TestDeletion:
    """Documents missing from a listing but known to the store."""

    def test_deleted_everywhere(self):
        verdict = classify_fingerprints(None, None, V1, V1)
        assert verdict.classification == Classification.DELETED
        assert verdict.deleted_side is None

    def test_deleted_locally_unchanged_remotely(self):
        verdict = classify_fingerprints(None, V1, V1, V1)
        assert verdict.classification == Classification.DELETED
        assert verdict.deleted_side == Side.LOCAL

    def test_deleted_remotely_unchanged_locally(self):
        verdict = classify_fingerprints(V1, None, V1, V1)
        assert verdict.classification == Classification.DELETED
        assert verdict.deleted_side == Side.REMOTE

    def test_deleted_locally_modified_remotely(self):
        verdict = classify_fingerprints(None, V2, V1, V1)
        assert verdict.classification == Classification.BOTH_MODIFIED
        assert verdict.deleted_side == Side.LOCAL


class TestPerSideBases:
    """Records that disagree after an interrupted pass."""

    def test_single_record_serves_both_sides(self):
        verdict = classify_fingerprints(V1, V2, V1, None)
        assert verdict.classification == Classification.REMOTE_ONLY

    def test_half_applied_pass_converges(self):
        """Local written and committed, remote written but not committed."""
        verdict = classify_fingerprints(V2, V2, V2, V1)
        assert verdict.classification == Classification.CONVERGED

    def test_disagreeing_records_with_unchanged_sides_are_ambiguous(self):
        verdict = classify_fingerprints(V1, V2, V1, V2)
        assert verdict.classification == Classification.BOTH_MODIFIED
        assert verdict.ambiguous_origin is True


class TestChangeDetector:
    """ChangeDetector.classify() against a store."""

    def test_reads_records_and_clocks(self, memory_store):
        memory_store.commit_many("A.md", {"local": V1, "remote": V1})
        memory_store.commit("A.md", "local", V1)
        detector = ChangeDetector(memory_store, "local", "remote")

        detection = detector.classify("A.md", V2, V1)
        assert detection.classification == Classification.LOCAL_ONLY
        assert detection.base == V1
        assert detection.local_clock == 2
        assert detection.remote_clock == 1

    def test_no_records_has_no_clocks(self, memory_store):
        detector = ChangeDetector(memory_store, "local", "remote")
        detection = detector.classify("new.md", V1, None)
        assert detection.classification == Classification.LOCAL_ONLY
        assert detection.local_clock is None
        assert detection.base is None

    def test_ambiguous_origin_logged(self, memory_store, caplog):
        detector = ChangeDetector(memory_store, "local", "remote")
        with caplog.at_level(logging.WARNING, logger="vault_sync.sync.detector"):
            detection = detector.classify("x.md", V1, V2)
        assert detection.ambiguous_origin is True
        assert "No common ancestor" in caplog.text

    def test_structural_change_flag(self, memory_store):
        base = fingerprint(b"# A\n\ntext\n")
        memory_store.commit_many("s.md", {"local": base, "remote": base})
        detector = ChangeDetector(memory_store, "local", "remote")

        text_edit = detector.classify("s.md", fingerprint(b"# A\n\nmore text\n"), base)
        assert text_edit.structural_change is False

        new_heading = detector.classify(
            "s.md", fingerprint(b"# A\n\n## B\n\ntext\n"), base
        )
        assert new_heading.structural_change is True
