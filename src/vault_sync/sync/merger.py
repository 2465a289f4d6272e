"""Three-way merge and diff utilities for the sync engine.

Documents are merged at **block** granularity (see ``blocks``), not line by
line: each side is aligned to the base with ``difflib.SequenceMatcher``
over normalized block keys, and blocks in replaced regions are paired by
content similarity so that insertions and removals do not shift identity.
Reflowed or renumbered blocks therefore do not conflict.

Key design choices:

* The merge never raises for divergent content.  It returns ``Merged`` or
  ``Unresolved``; the latter carries both input documents verbatim.  Only
  undecodable input raises ``DocumentEncodingError``.
* Conflict previews use the ``merge3`` library (the same algorithm used by
  Bazaar/Breezy) with Git-style labels: ``<<<<<<< LOCAL``, ``=======``,
  ``>>>>>>> REMOTE``.
* A block replaced in place counts as an edit of that block however little
  of it survives, so two different edits of one block always conflict.
* Deleted-on-one-side / modified-on-the-other keeps the modification only
  when it is substantial (change ratio above
  ``MergePolicyConfig.substantial_edit_threshold``).
* ``generate_diff`` is a thin wrapper around ``difflib.unified_diff``
  for display purposes (sync reports, conflict review).
"""

from __future__ import annotations

import difflib
import logging
from dataclasses import dataclass, field
from enum import Enum

from merge3 import Merge3

from vault_sync.config_schema import MergePolicyConfig
from vault_sync.exceptions import DocumentEncodingError
from vault_sync.sync.blocks import (
    Block,
    BlockKind,
    join_blocks,
    make_block,
    parse_blocks,
    similarity,
)
from vault_sync.sync.models import (
    BlockConflict,
    Document,
    Merged,
    MergeOutcome,
    Removed,
    Side,
    Unresolved,
)

logger = logging.getLogger(__name__)


class BlockStatus(str, Enum):
    """What one side did to a base block."""

    UNCHANGED = "unchanged"
    REFORMATTED = "reformatted"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass
class SideAlignment:
    """Alignment of one side against the base block list.

    Attributes:
        status: Per base block, what this side did to it.
        blocks: Per base block, this side's counterpart (``None`` if deleted).
        inserts: Blocks this side inserted, keyed by the index of the base
            block they follow (``-1`` for the start of the document).
    """

    status: list[BlockStatus]
    blocks: list[Block | None]
    inserts: dict[int, list[Block]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Line-level helpers
# ---------------------------------------------------------------------------


def attempt_merge(
    base_content: str,
    local_content: str,
    remote_content: str,
) -> tuple[str, bool]:
    """Perform a line-level three-way merge of local and remote changes.

    Args:
        base_content: The common ancestor content.
        local_content: The current local content.
        remote_content: The current remote content.

    Returns:
        A tuple of ``(merged_text, has_conflicts)`` where *merged_text* is
        the result of the merge (possibly containing conflict markers) and
        *has_conflicts* is ``True`` if conflict markers are present.
    """
    base_lines = base_content.splitlines(True)
    local_lines = local_content.splitlines(True)
    remote_lines = remote_content.splitlines(True)

    m3 = Merge3(base_lines, local_lines, remote_lines)

    merged_lines = list(
        m3.merge_lines(
            name_a="LOCAL",
            name_b="REMOTE",
            start_marker="<<<<<<<",
            mid_marker="=======",
            end_marker=">>>>>>>",
        )
    )

    merged_text = "".join(merged_lines)
    has_conflicts = "<<<<<<< LOCAL" in merged_text

    return merged_text, has_conflicts


def render_conflict_preview(
    base_content: str | None,
    local_content: str,
    remote_content: str,
) -> str:
    """Render both variants with Git-style conflict markers.

    Without a base the whole documents are wrapped in a single marker pair.
    """
    if base_content is None:
        return (
            "<<<<<<< LOCAL\n"
            + local_content
            + "\n=======\n"
            + remote_content
            + "\n>>>>>>> REMOTE\n"
        )
    merged_text, _ = attempt_merge(base_content, local_content, remote_content)
    return merged_text


def generate_diff(
    old_content: str,
    new_content: str,
    label_old: str = "old",
    label_new: str = "new",
) -> str:
    """Generate a unified diff between two strings.

    Args:
        old_content: The original content.
        new_content: The modified content.
        label_old: Label for the old file in the diff header.
        label_new: Label for the new file in the diff header.

    Returns:
        A unified diff string.  Empty string if the contents are identical.
    """
    old_lines = old_content.splitlines(True)
    new_lines = new_content.splitlines(True)

    diff_lines = difflib.unified_diff(
        old_lines,
        new_lines,
        fromfile=label_old,
        tofile=label_new,
    )

    return "".join(diff_lines)


def change_ratio(old_text: str, new_text: str) -> float:
    """Fraction of *old_text* that changed in *new_text* (``0.0``-``1.0``)."""
    if old_text == new_text:
        return 0.0
    matcher = difflib.SequenceMatcher(None, old_text, new_text, autojunk=False)
    return 1.0 - matcher.ratio()


# ---------------------------------------------------------------------------
# Alignment
# ---------------------------------------------------------------------------


def align_blocks(
    base: list[Block], side: list[Block], threshold: float
) -> SideAlignment:
    """Align *side* to *base*.

    Equal keys pair directly.  Inside replaced regions each base block is
    paired with the most similar later side block scoring at least
    *threshold*, keeping the pairing monotonic.  Between two such pairs the
    leftover base and side blocks are rewrites and pair up in order; only
    base blocks left over after that are deletions, and only side blocks
    left over are insertions.
    """
    alignment = SideAlignment(
        status=[BlockStatus.DELETED] * len(base),
        blocks=[None] * len(base),
    )

    def pair(i: int, block: Block) -> None:
        original = base[i]
        if block.text == original.text:
            status = BlockStatus.UNCHANGED
        elif block.key == original.key:
            status = BlockStatus.REFORMATTED
        else:
            status = BlockStatus.MODIFIED
        alignment.status[i] = status
        alignment.blocks[i] = block

    def insert(anchor: int, blocks: list[Block]) -> None:
        if blocks:
            alignment.inserts.setdefault(anchor, []).extend(blocks)

    def rewrite(indices: list[int], blocks: list[Block], anchor: int) -> None:
        for i, block in zip(indices, blocks):
            pair(i, block)
        insert(anchor, blocks[len(indices):])

    matcher = difflib.SequenceMatcher(
        None, [b.key for b in base], [b.key for b in side], autojunk=False
    )
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        match tag:
            case "equal":
                for offset in range(i2 - i1):
                    pair(i1 + offset, side[j1 + offset])
            case "delete":
                pass
            case "insert":
                insert(i1 - 1, side[j1:j2])
            case "replace":
                j = j1
                gap: list[int] = []
                for i in range(i1, i2):
                    best_j, best_score = None, threshold
                    for candidate in range(j, j2):
                        score = similarity(base[i], side[candidate])
                        if score >= best_score and (
                            best_j is None or score > best_score
                        ):
                            best_j, best_score = candidate, score
                    if best_j is None:
                        gap.append(i)
                        continue
                    rewrite(gap, side[j:best_j], i - 1)
                    pair(i, side[best_j])
                    j = best_j + 1
                    gap = []
                rewrite(gap, side[j:j2], i2 - 1)
    return alignment


# ---------------------------------------------------------------------------
# Merge engine
# ---------------------------------------------------------------------------


class MergeEngine:
    """Block-level three-way merge.

    Args:
        policy: Thresholds and switches; defaults to ``MergePolicyConfig()``.
    """

    def __init__(self, policy: MergePolicyConfig | None = None) -> None:
        self.policy = policy or MergePolicyConfig()

    def merge(
        self,
        base: Document | None,
        local: Document,
        remote: Document,
    ) -> MergeOutcome:
        """Merge *local* and *remote* against their common ancestor *base*.

        Returns:
            ``Merged`` with the combined bytes, or ``Unresolved`` carrying
            both variants when any region conflicts.

        Raises:
            DocumentEncodingError: If a document is not valid UTF-8.
        """
        document_id = local.document_id

        if local.content == remote.content:
            return Merged(content=local.content)
        if base is not None and local.content == base.content:
            return Merged(content=remote.content)
        if base is not None and remote.content == base.content:
            return Merged(content=local.content)

        if base is None:
            preview = None
            try:
                preview = render_conflict_preview(
                    None,
                    local.content.decode("utf-8"),
                    remote.content.decode("utf-8"),
                )
            except UnicodeDecodeError:
                logger.debug("No text preview for binary document %s", document_id)
            return Unresolved(
                local=local,
                remote=remote,
                reason="no common ancestor",
                preview=preview,
            )

        base_text = _decode(base, "base")
        local_text = _decode(local, "local")
        remote_text = _decode(remote, "remote")

        base_blocks = parse_blocks(base_text)
        threshold = self.policy.block_match_threshold
        left = align_blocks(base_blocks, parse_blocks(local_text), threshold)
        right = align_blocks(base_blocks, parse_blocks(remote_text), threshold)

        output: list[Block] = []
        conflicts: list[BlockConflict] = []

        self._merge_inserts(-1, left, right, output, conflicts)
        for i, block in enumerate(base_blocks):
            resolved = self._merge_block(i, block, left, right, conflicts)
            if resolved is not None:
                output.append(resolved)
            self._merge_inserts(i, left, right, output, conflicts)

        if conflicts:
            logger.info(
                "Merge of %s left %d conflicting block(s)",
                document_id,
                len(conflicts),
            )
            return Unresolved(
                local=local,
                remote=remote,
                reason=f"{len(conflicts)} conflicting block(s)",
                conflicts=conflicts,
                preview=render_conflict_preview(base_text, local_text, remote_text),
            )

        logger.debug("Merged %s cleanly", document_id)
        return Merged(content=join_blocks(output).encode("utf-8"))

    def merge_deletion(
        self,
        base: Document | None,
        survivor: Document,
        deleted_side: Side,
    ) -> Merged | Removed:
        """Decide between a deletion and the other side's edit.

        The edit survives when its change ratio against *base* exceeds
        ``substantial_edit_threshold``, or when there is no base to compare
        against; otherwise the deletion wins.

        Raises:
            DocumentEncodingError: If *base* or *survivor* is not valid UTF-8.
        """
        if base is None:
            return Merged(content=survivor.content)
        if survivor.content == base.content:
            return Removed(reason=f"deleted on {deleted_side.value}, unchanged elsewhere")

        ratio = change_ratio(_decode(base, "base"), _decode(survivor, "survivor"))
        if ratio > self.policy.substantial_edit_threshold:
            logger.info(
                "Keeping %s: edit (%.2f changed) outweighs deletion on %s",
                survivor.document_id,
                ratio,
                deleted_side.value,
            )
            return Merged(content=survivor.content)
        return Removed(
            reason=(
                f"deleted on {deleted_side.value}; other edit changed only "
                f"{ratio:.0%}"
            )
        )

    # ------------------------------------------------------------------
    # Per-block rules
    # ------------------------------------------------------------------

    def _merge_block(
        self,
        index: int,
        base: Block,
        left: SideAlignment,
        right: SideAlignment,
        conflicts: list[BlockConflict],
    ) -> Block | None:
        l_status, l_block = left.status[index], left.blocks[index]
        r_status, r_block = right.status[index], right.blocks[index]
        unchanged = (BlockStatus.UNCHANGED, BlockStatus.REFORMATTED)

        match (l_status, r_status):
            case (BlockStatus.UNCHANGED, BlockStatus.UNCHANGED):
                return l_block
            case (BlockStatus.DELETED, BlockStatus.DELETED):
                return None
            case (BlockStatus.DELETED, s) if s in unchanged:
                return None
            case (s, BlockStatus.DELETED) if s in unchanged:
                return None
            case (BlockStatus.DELETED, BlockStatus.MODIFIED):
                return self._deletion_vs_edit(base, r_block)
            case (BlockStatus.MODIFIED, BlockStatus.DELETED):
                return self._deletion_vs_edit(base, l_block)
            case (BlockStatus.MODIFIED, BlockStatus.MODIFIED):
                return self._both_modified(index, base, l_block, r_block, conflicts)
            case (BlockStatus.MODIFIED, _):
                return l_block
            case (_, BlockStatus.MODIFIED):
                return r_block
            case (BlockStatus.REFORMATTED, _):
                return l_block
            case (_, BlockStatus.REFORMATTED):
                return r_block
            case _:  # pragma: no cover
                raise ValueError(f"Unhandled block statuses: {l_status}, {r_status}")

    def _deletion_vs_edit(self, base: Block, edited: Block) -> Block | None:
        ratio = 1.0 - similarity(base, edited)
        if ratio > self.policy.substantial_edit_threshold:
            return edited
        return None

    def _both_modified(
        self,
        index: int,
        base: Block,
        local: Block,
        remote: Block,
        conflicts: list[BlockConflict],
    ) -> Block:
        if local.key == remote.key:
            return local

        kind = "edit"
        if (
            base.kind == BlockKind.FRONTMATTER
            and local.kind == BlockKind.FRONTMATTER
            and remote.kind == BlockKind.FRONTMATTER
        ):
            kind = "frontmatter"
            if self.policy.merge_frontmatter_lines:
                merged_text, has_conflicts = attempt_merge(
                    base.text, local.text, remote.text
                )
                if not has_conflicts:
                    return make_block(merged_text)

        conflicts.append(
            BlockConflict(
                kind=kind,
                base_text=base.text,
                local_text=local.text,
                remote_text=remote.text,
                position=index,
            )
        )
        return local

    @staticmethod
    def _merge_inserts(
        anchor: int,
        left: SideAlignment,
        right: SideAlignment,
        output: list[Block],
        conflicts: list[BlockConflict],
    ) -> None:
        local_new = left.inserts.get(anchor, [])
        remote_new = right.inserts.get(anchor, [])
        if not remote_new:
            output.extend(local_new)
            return
        if not local_new:
            output.extend(remote_new)
            return
        if [b.key for b in local_new] == [b.key for b in remote_new]:
            output.extend(local_new)
            return

        conflicts.append(
            BlockConflict(
                kind="insert",
                local_text="".join(b.text for b in local_new),
                remote_text="".join(b.text for b in remote_new),
                position=anchor,
            )
        )
        output.extend(local_new)


def _decode(document: Document, role: str) -> str:
    try:
        return document.content.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise DocumentEncodingError(
            f"{role} version of '{document.document_id}' is not valid UTF-8: {exc}",
            document_id=document.document_id,
        ) from exc
