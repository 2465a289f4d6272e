"""Tests for the block-level merge engine.

Covers:
- Byte-level shortcuts and convergence (L == R gives Merged(L))
- Non-overlapping edits in different blocks merge cleanly
- Reflowed text does not conflict with edits
- Same-block edits (including wholesale rewrites) and differing
  insertions are Unresolved, losslessly
- Delete/modify policy at block and document level, and how it
  interacts with the block match threshold
- Front matter line merge
- No common ancestor and encoding failures
- Line-level helpers (attempt_merge, render_conflict_preview, generate_diff)
"""

from __future__ import annotations

import pytest

from vault_sync.config_schema import MergePolicyConfig
from vault_sync.exceptions import DocumentEncodingError
from vault_sync.sync.blocks import parse_blocks
from vault_sync.sync.merger import (
    BlockStatus,
    MergeEngine,
    align_blocks,
    attempt_merge,
    change_ratio,
    generate_diff,
    render_conflict_preview,
)
from vault_sync.sync.models import Document, Merged, Removed, Side, Unresolved


def doc(content: str | bytes, document_id: str = "note.md") -> Document:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return Document(document_id=document_id, content=content)


@pytest.fixture
def engine():
    return MergeEngine()


# ---------------------------------------------------------------------------
# Shortcuts
# ---------------------------------------------------------------------------


class TestShortcuts:
    """Byte-identical cases never parse blocks."""

    def test_converged_sides_merge_to_local(self, engine):
        outcome = engine.merge(doc("base\n"), doc("same\n"), doc("same\n"))
        assert outcome == Merged(content=b"same\n")

    def test_converged_without_base(self, engine):
        outcome = engine.merge(None, doc("same\n"), doc("same\n"))
        assert outcome == Merged(content=b"same\n")

    def test_local_unchanged_takes_remote(self, engine):
        outcome = engine.merge(doc("v1\n"), doc("v1\n"), doc("v2\n"))
        assert outcome == Merged(content=b"v2\n")

    def test_remote_unchanged_takes_local(self, engine):
        outcome = engine.merge(doc("v1\n"), doc("v2\n"), doc("v1\n"))
        assert outcome == Merged(content=b"v2\n")

    def test_binary_convergence_needs_no_decoding(self, engine):
        outcome = engine.merge(doc(b"\xff\x00"), doc(b"\xfe"), doc(b"\xfe"))
        assert outcome == Merged(content=b"\xfe")


# ---------------------------------------------------------------------------
# Block merge
# ---------------------------------------------------------------------------

BASE = "# Title\n\nAlpha paragraph one.\n\nBeta paragraph two.\n"
FOX_LINE = "The quick brown fox jumps over the lazy dog."
FOX = f"# Title\n\n{FOX_LINE}\n\nTail.\n"


class TestCleanMerges:
    """Edits that touch different blocks."""

    def test_edits_in_different_paragraphs(self, engine):
        local = BASE.replace("Alpha paragraph one.", "Alpha paragraph one, edited locally.")
        remote = BASE.replace("Beta paragraph two.", "Beta paragraph two, edited remotely.")

        outcome = engine.merge(doc(BASE), doc(local), doc(remote))

        assert isinstance(outcome, Merged)
        assert outcome.content.decode() == (
            "# Title\n\n"
            "Alpha paragraph one, edited locally.\n\n"
            "Beta paragraph two, edited remotely.\n"
        )

    def test_reflow_does_not_conflict_with_edit(self, engine):
        """A reflowed block yields to a real edit of the same block."""
        base = "Alpha beta gamma delta.\n\nSecond.\n"
        local = "Alpha beta\ngamma delta.\n\nSecond.\n"
        remote = "Alpha beta gamma delta epsilon.\n\nSecond.\n"

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert outcome == Merged(content=remote.encode())

    def test_reflow_kept_when_other_side_edits_elsewhere(self, engine):
        base = "Alpha beta gamma delta.\n\nSecond paragraph here.\n"
        local = "Alpha beta\ngamma delta.\n\nSecond paragraph here.\n"
        remote = "Alpha beta gamma delta.\n\nSecond paragraph here, edited.\n"

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert outcome == Merged(
            content=b"Alpha beta\ngamma delta.\n\nSecond paragraph here, edited.\n"
        )

    def test_rewrite_merges_with_edit_elsewhere(self, engine):
        rewritten = "Entirely new prose replacing everything here, zzz."
        local = FOX.replace(FOX_LINE, rewritten)
        remote = FOX.replace("Tail.", "Tail, edited.")

        outcome = engine.merge(doc(FOX), doc(local), doc(remote))

        assert outcome == Merged(
            content=f"# Title\n\n{rewritten}\n\nTail, edited.\n".encode()
        )

    def test_identical_insertions_taken_once(self, engine):
        base = "Apples are red.\n\nBananas are yellow.\n"
        new = "A totally new section appears here.\n\n"
        local = "Apples are red.\n\n" + new + "Bananas are yellow.\n"
        remote = "Apples are red.\n\n" + new + "Bananas are yellow and sweet.\n"

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert outcome == Merged(
            content=(
                "Apples are red.\n\n" + new + "Bananas are yellow and sweet.\n"
            ).encode()
        )

    def test_insertions_at_different_positions(self, engine):
        base = "Apples are red.\n\nBananas are yellow.\n"
        local = "Local intro block.\n\n" + base
        remote = base + "\nRemote closing block.\n"

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert outcome == Merged(
            content=(
                "Local intro block.\n\nApples are red.\n\nBananas are yellow.\n"
                "\nRemote closing block.\n"
            ).encode()
        )


class TestConflicts:
    """Unresolved outcomes keep both variants intact."""

    def test_same_paragraph_edited_differently(self, engine):
        base = "# Notes\n\nThe meeting is on Monday at noon.\n"
        local = "# Notes\n\nThe meeting is on Tuesday at noon.\n"
        remote = "# Notes\n\nThe meeting is on Monday at three.\n"

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert isinstance(outcome, Unresolved)
        assert outcome.local.content == local.encode()
        assert outcome.remote.content == remote.encode()
        assert len(outcome.conflicts) == 1
        conflict = outcome.conflicts[0]
        assert conflict.kind == "edit"
        assert conflict.position == 1
        assert "Tuesday" in conflict.local_text
        assert "three" in conflict.remote_text
        assert "<<<<<<< LOCAL" in outcome.preview
        assert ">>>>>>> REMOTE" in outcome.preview

    def test_differing_insertions_at_same_anchor(self, engine):
        base = "Apples are red.\n\nBananas are yellow.\n"
        local = "Apples are red.\n\nLocal addition here.\n\nBananas are yellow.\n"
        remote = "Apples are red.\n\nRemote text appended.\n\nBananas are yellow.\n"

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert isinstance(outcome, Unresolved)
        assert [c.kind for c in outcome.conflicts] == ["insert"]
        assert outcome.conflicts[0].position == 0
        assert outcome.conflicts[0].base_text == ""

    def test_rewrite_against_light_edit_conflicts(self, engine):
        """A paragraph replaced wholesale still conflicts with a small edit."""
        local = FOX.replace(FOX_LINE, "Entirely new prose replacing everything here, zzz.")
        remote = FOX.replace("lazy dog.", "lazy cat.")

        outcome = engine.merge(doc(FOX), doc(local), doc(remote))

        assert isinstance(outcome, Unresolved)
        assert outcome.local.content == local.encode()
        assert outcome.remote.content == remote.encode()
        assert [c.kind for c in outcome.conflicts] == ["edit"]
        conflict = outcome.conflicts[0]
        assert conflict.position == 1
        assert "Entirely new prose" in conflict.local_text
        assert "lazy cat" in conflict.remote_text

    def test_rewrite_against_moderate_edit_not_duplicated(self, engine):
        local = FOX.replace(FOX_LINE, "Entirely new prose replacing everything here, zzz.")
        remote = FOX.replace(
            "jumps over the lazy dog.", "leaps across a sleepy old dog."
        )

        outcome = engine.merge(doc(FOX), doc(local), doc(remote))

        assert isinstance(outcome, Unresolved)
        assert len(outcome.conflicts) == 1
        assert "sleepy old dog" in outcome.conflicts[0].remote_text
        assert "sleepy old dog" not in outcome.conflicts[0].local_text

    def test_edit_below_match_threshold_still_conflicts(self):
        engine = MergeEngine(MergePolicyConfig(block_match_threshold=0.9))
        base = "Keep me.\n\nAlpha beta gamma delta.\n\nTail.\n"
        local = base.replace("delta.", "delta epsilon zeta eta theta.")
        remote = base.replace("delta.", "delta!")

        outcome = engine.merge(doc(base), doc(local), doc(remote))

        assert isinstance(outcome, Unresolved)
        assert [c.kind for c in outcome.conflicts] == ["edit"]

    def test_no_common_ancestor(self, engine):
        outcome = engine.merge(None, doc("mine\n"), doc("theirs\n"))

        assert isinstance(outcome, Unresolved)
        assert outcome.reason == "no common ancestor"
        assert outcome.preview == (
            "<<<<<<< LOCAL\nmine\n\n=======\ntheirs\n\n>>>>>>> REMOTE\n"
        )

    def test_no_common_ancestor_binary_has_no_preview(self, engine):
        outcome = engine.merge(None, doc(b"\xff"), doc(b"\xfe"))
        assert isinstance(outcome, Unresolved)
        assert outcome.preview is None
        assert outcome.local.content == b"\xff"

    def test_undecodable_input_raises(self, engine):
        with pytest.raises(DocumentEncodingError) as exc_info:
            engine.merge(doc("base\n"), doc(b"\xff\xfe"), doc("remote\n"))
        assert exc_info.value.document_id == "note.md"


class TestDeletionPolicy:
    """Deleted on one side, modified on the other."""

    BASE = (
        "Keep me.\n\n"
        "Target paragraph with some words.\n\n"
        "Tail.\n"
    )
    DELETED = "Keep me.\n\nTail.\n"
    SMALL_EDIT = BASE.replace("some words.", "some words!")

    # A paired edit of "Alpha beta gamma delta." changing about a third of it.
    MODERATE_BASE = "Keep me.\n\nAlpha beta gamma delta.\n\nTail.\n"
    MODERATE_EDIT = MODERATE_BASE.replace("delta.", "delta epsilon zeta eta theta.")
    REWRITE = "Keep me.\n\n- A bullet replacing the paragraph.\n\nTail.\n"

    def test_moderate_edit_survives_default_deletion(self, engine):
        outcome = engine.merge(
            doc(self.MODERATE_BASE), doc(self.MODERATE_EDIT), doc(self.DELETED)
        )
        assert outcome == Merged(content=self.MODERATE_EDIT.encode())

    def test_paired_edit_cannot_beat_deletion_at_half_threshold(self):
        """Paired blocks differ by at most 1 - block_match_threshold."""
        engine = MergeEngine(
            MergePolicyConfig(block_match_threshold=0.5, substantial_edit_threshold=0.5)
        )
        outcome = engine.merge(
            doc(self.MODERATE_BASE), doc(self.DELETED), doc(self.MODERATE_EDIT)
        )
        assert outcome == Merged(content=self.DELETED.encode())

    def test_rewrite_beats_deletion_at_half_threshold(self):
        engine = MergeEngine(
            MergePolicyConfig(block_match_threshold=0.5, substantial_edit_threshold=0.5)
        )
        outcome = engine.merge(
            doc(self.MODERATE_BASE), doc(self.DELETED), doc(self.REWRITE)
        )
        assert outcome == Merged(content=self.REWRITE.encode())

    def test_minor_edit_loses_to_deletion(self, engine):
        outcome = engine.merge(doc(self.BASE), doc(self.DELETED), doc(self.SMALL_EDIT))
        assert outcome == Merged(content=self.DELETED.encode())

    def test_substantial_edit_survives_deletion(self):
        engine = MergeEngine(MergePolicyConfig(substantial_edit_threshold=0.01))
        outcome = engine.merge(doc(self.BASE), doc(self.SMALL_EDIT), doc(self.DELETED))
        assert outcome == Merged(content=self.SMALL_EDIT.encode())

    def test_document_deletion_wins_over_minor_edit(self, engine):
        outcome = engine.merge_deletion(
            doc("A short note.\n"), doc("A short note!\n"), Side.LOCAL
        )
        assert isinstance(outcome, Removed)

    def test_document_edit_wins_over_deletion(self, engine):
        outcome = engine.merge_deletion(
            doc("Short note.\n"),
            doc("Completely different and much longer content now.\n"),
            Side.REMOTE,
        )
        assert outcome == Merged(
            content=b"Completely different and much longer content now.\n"
        )

    def test_document_unchanged_survivor_is_removed(self, engine):
        outcome = engine.merge_deletion(doc("same\n"), doc("same\n"), Side.LOCAL)
        assert isinstance(outcome, Removed)

    def test_missing_base_keeps_survivor(self, engine):
        outcome = engine.merge_deletion(None, doc("content\n"), Side.LOCAL)
        assert outcome == Merged(content=b"content\n")


class TestFrontmatter:
    """Front matter blocks merge line by line."""

    BASE = "---\ntitle: A\nauthor: me\ntags: x\n---\nBody.\n"
    LOCAL = "---\ntitle: B\nauthor: me\ntags: x\n---\nBody.\n"
    REMOTE = "---\ntitle: A\nauthor: me\ntags: y\n---\nBody.\n"

    def test_disjoint_key_edits_merge(self, engine):
        outcome = engine.merge(doc(self.BASE), doc(self.LOCAL), doc(self.REMOTE))
        assert outcome == Merged(
            content=b"---\ntitle: B\nauthor: me\ntags: y\n---\nBody.\n"
        )

    def test_line_merge_can_be_disabled(self):
        engine = MergeEngine(MergePolicyConfig(merge_frontmatter_lines=False))
        outcome = engine.merge(doc(self.BASE), doc(self.LOCAL), doc(self.REMOTE))
        assert isinstance(outcome, Unresolved)
        assert outcome.conflicts[0].kind == "frontmatter"


# ---------------------------------------------------------------------------
# Alignment and helpers
# ---------------------------------------------------------------------------


class TestAlignment:
    """align_blocks() statuses and insert anchors."""

    def test_statuses(self):
        base = parse_blocks("One one.\n\nTwo two two.\n\nThree.\n")
        side = parse_blocks("One\none.\n\nTwo two two two.\n\nNew block entirely.\n")
        alignment = align_blocks(base, side, 0.5)
        assert alignment.status == [
            BlockStatus.REFORMATTED,
            BlockStatus.MODIFIED,
            BlockStatus.MODIFIED,
        ]
        assert alignment.blocks[2].text == "New block entirely.\n"
        assert alignment.inserts == {}

    def test_leftover_base_block_is_deleted(self):
        base = parse_blocks(
            "Keep me.\n\nFirst old paragraph.\n\nSecond old paragraph.\n\nTail.\n"
        )
        side = parse_blocks("Keep me.\n\n- A bullet replacing both.\n\nTail.\n")
        alignment = align_blocks(base, side, 0.5)
        assert alignment.status == [
            BlockStatus.UNCHANGED,
            BlockStatus.MODIFIED,
            BlockStatus.DELETED,
            BlockStatus.UNCHANGED,
        ]
        assert alignment.blocks[1].kind.value == "list_item"
        assert alignment.inserts == {}

    def test_leftover_side_blocks_inserted_after_rewrite(self):
        base = parse_blocks("Keep me.\n\nOld paragraph.\n\nTail.\n")
        side = parse_blocks(
            "Keep me.\n\n## Fresh heading\n\n- A fresh bullet.\n\nTail.\n"
        )
        alignment = align_blocks(base, side, 0.5)
        assert alignment.status == [
            BlockStatus.UNCHANGED,
            BlockStatus.MODIFIED,
            BlockStatus.UNCHANGED,
        ]
        assert alignment.blocks[1].kind.value == "heading"
        assert [b.kind.value for b in alignment.inserts[1]] == ["list_item"]

    def test_insert_at_start_anchored_before_first(self):
        base = parse_blocks("Body.\n")
        side = parse_blocks("# Heading\n\nBody.\n")
        alignment = align_blocks(base, side, 0.5)
        assert alignment.status == [BlockStatus.UNCHANGED]
        assert [b.kind.value for b in alignment.inserts[-1]] == ["heading"]


class TestLineHelpers:
    """attempt_merge(), render_conflict_preview(), generate_diff()."""

    def test_attempt_merge_clean(self):
        merged, has_conflicts = attempt_merge(
            "line1\nline2\n", "line1\nLOCAL\nline2\n", "line1\nline2\nREMOTE\n"
        )
        assert not has_conflicts
        assert merged == "line1\nLOCAL\nline2\nREMOTE\n"

    def test_attempt_merge_conflict_markers(self):
        merged, has_conflicts = attempt_merge("line1\n", "LOCAL change\n", "REMOTE change\n")
        assert has_conflicts
        assert "<<<<<<< LOCAL" in merged
        assert "=======" in merged
        assert ">>>>>>> REMOTE" in merged

    def test_preview_with_base_uses_merge3(self):
        preview = render_conflict_preview("a\n", "b\n", "c\n")
        assert preview.startswith("<<<<<<< LOCAL\n")

    def test_generate_diff(self):
        diff = generate_diff("a\nb\n", "a\nc\n", "local", "remote")
        assert "--- local" in diff
        assert "+++ remote" in diff
        assert "-b" in diff
        assert "+c" in diff

    def test_generate_diff_no_changes(self):
        assert generate_diff("same\n", "same\n") == ""

    def test_change_ratio_bounds(self):
        assert change_ratio("abc", "abc") == 0.0
        assert change_ratio("abc", "xyz") == 1.0
