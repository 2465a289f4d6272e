"""Tests for sync report formatting.

Covers:
- format_sync_summary sections, counts and cancellation marker
- format_conflict diff, preview truncation and binary fallback
- summary_to_json structure
"""

import json

from vault_sync.sync.fingerprint import fingerprint
from vault_sync.sync.models import (
    Classification,
    ConflictRecord,
    Document,
    DocumentResult,
    ResultStatus,
    SyncAction,
    SyncSummary,
)
from vault_sync.sync.reporter import (
    format_conflict,
    format_sync_summary,
    summary_to_json,
)


def _summary(**kwargs):
    results = [
        DocumentResult(
            document_id="a.md",
            classification=Classification.UNCHANGED,
            status=ResultStatus.UNCHANGED,
        ),
        DocumentResult(
            document_id="b.md",
            classification=Classification.LOCAL_ONLY,
            action=SyncAction.PUSH,
            status=ResultStatus.FAST_FORWARDED,
            committed=True,
        ),
        DocumentResult(
            document_id="c.md",
            classification=Classification.BOTH_MODIFIED,
            action=SyncAction.MERGE,
            status=ResultStatus.MERGED,
            committed=True,
        ),
        DocumentResult(
            document_id="d.md",
            classification=Classification.BOTH_MODIFIED,
            action=SyncAction.CONFLICT,
            status=ResultStatus.UNRESOLVED,
            error="1 conflicting block(s)",
        ),
        DocumentResult(
            document_id="e.md",
            status=ResultStatus.FAILED,
            error="Could not read local copy: permission denied",
        ),
    ]
    return SyncSummary(
        local_replica_id="laptop",
        remote_replica_id="phone",
        results=results,
        started_at="2026-01-01T00:00:00+00:00",
        completed_at="2026-01-01T00:00:01+00:00",
        **kwargs,
    )


def _conflict(local: bytes, remote: bytes, preview=None):
    return ConflictRecord(
        document_id="notes/A.md",
        base_fingerprint=None,
        local=Document(document_id="notes/A.md", content=local),
        remote=Document(document_id="notes/A.md", content=remote),
        local_fingerprint=fingerprint(local),
        remote_fingerprint=fingerprint(remote),
        reason="no common ancestor",
        preview=preview,
        detected_at="2026-01-01T00:00:00+00:00",
    )


class TestFormatSyncSummary:
    """Human-readable pass summary."""

    def test_header_and_counts(self):
        text = format_sync_summary(_summary())
        assert text.startswith("Sync laptop <-> phone\n")
        assert (
            "5 documents: 1 unchanged, 1 fast-forwarded, 1 merged, "
            "1 unresolved, 1 failed" in text
        )

    def test_sections(self):
        text = format_sync_summary(_summary())
        assert "Fast-forwarded:\n  [push] b.md" in text
        assert "Merged automatically:\n  c.md" in text
        assert "Needs resolution:\n  d.md: 1 conflicting block(s)" in text
        assert "Errors:\n  e.md: Could not read local copy" in text
        assert "Deleted:" not in text
        assert "Skipped:" not in text

    def test_cancelled_pass(self):
        text = format_sync_summary(_summary(cancelled=True, not_processed=["f.md", "g.md"]))
        assert text.splitlines()[0] == "Sync laptop <-> phone (CANCELLED)"
        assert "Not processed: 2 documents" in text

    def test_empty_pass(self):
        summary = SyncSummary(
            local_replica_id="local",
            remote_replica_id="remote",
            started_at="2026-01-01T00:00:00+00:00",
        )
        text = format_sync_summary(summary)
        assert "0 documents" in text
        assert not text.endswith("\n")


class TestFormatConflict:
    """Single conflict review."""

    def test_diff_between_variants(self):
        text = format_conflict(_conflict(b"one\nmine\n", b"one\ntheirs\n"))
        assert text.startswith("Conflict: notes/A.md\nReason: no common ancestor")
        assert "--- local: notes/A.md" in text
        assert "+++ remote: notes/A.md" in text
        assert "-mine" in text
        assert "+theirs" in text
        assert "Conflict preview" not in text

    def test_preview_truncated(self):
        preview = "\n".join(f"line {i}" for i in range(30))
        text = format_conflict(_conflict(b"a\n", b"b\n", preview=preview))
        assert "--- Conflict preview ---" in text
        assert "  line 19" in text
        assert "  line 20" not in text
        assert "... (10 more lines)" in text

    def test_binary_variants(self):
        text = format_conflict(_conflict(b"\xff\xfe", b"abc"))
        assert "(binary content: local 2 bytes, remote 3 bytes)" in text


class TestSummaryToJson:
    """Structured summary."""

    def test_structure(self):
        data = summary_to_json(_summary())
        assert data["local_replica_id"] == "laptop"
        assert data["counts"]["merged"] == 1
        assert data["commits"] == 2
        assert data["unresolved_ids"] == ["d.md"]
        failed = data["results"][-1]
        assert failed == {
            "document_id": "e.md",
            "classification": None,
            "action": "skip",
            "status": "failed",
            "committed": False,
            "error": "Could not read local copy: permission denied",
        }

    def test_json_serializable(self):
        json.dumps(summary_to_json(_summary(not_processed=["z.md"])))
