"""Block model for structured text documents.

A document is split into an ordered sequence of blocks (front matter,
headings, paragraphs, list items, fenced code, quotes, tables, rules, raw
HTML).  Blocks are the unit of both the structural fingerprint and the
three-way merge.

Key design choices:

* **Lossless split** -- every byte of the input belongs to exactly one
  block (blank lines trail the block they follow), so
  ``"".join(b.text for b in parse_blocks(t)) == t``.
* **Closed kind set** -- ``BlockKind`` is fixed; per-kind behaviour is an
  explicit ``match`` over its members.
* **Normalized keys** -- a block's ``key`` ignores reflowed whitespace,
  renumbered ordered-list markers and trailing blank lines, so formatting
  churn does not look like an edit.
* Chunk boundaries come from a line scanner; the kind of each chunk comes
  from the ``mistune`` block parser.
"""

from __future__ import annotations

import difflib
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache

import mistune


class BlockKind(str, Enum):
    """Structural unit kinds."""

    FRONTMATTER = "frontmatter"
    HEADING = "heading"
    PARAGRAPH = "paragraph"
    LIST_ITEM = "list_item"
    CODE = "code"
    QUOTE = "quote"
    TABLE = "table"
    RULE = "rule"
    HTML = "html"
    BLANK = "blank"


@dataclass(frozen=True)
class Block:
    """One structural unit of a document.

    Attributes:
        kind: Block kind.
        text: Raw text including trailing blank lines.
        key: Normalized identity used for comparison.
        level: Heading level (0 for other kinds).
    """

    kind: BlockKind
    text: str
    key: str
    level: int = 0


_MARKDOWN = mistune.create_markdown(renderer=None, plugins=["table"])

_FENCE_RE = re.compile(r"^ {0,3}(`{3,}|~{3,})")
_HEADING_RE = re.compile(r"^ {0,3}#{1,6}(\s|$)")
_RULE_RE = re.compile(r"^ {0,3}([-*_])(?:\s*\1){2,}\s*$")
_LIST_RE = re.compile(r"^ {0,3}(?:[-*+]|\d{1,9}[.)])(?:\s|$)")
_ORDERED_MARKER_RE = re.compile(r"^\d{1,9}[.)]")
_BULLET_MARKER_RE = re.compile(r"^[*+]")
_TABLE_CELL_RE = re.compile(r"\s*\|\s*")
_FRONTMATTER_CLOSE = ("---", "...")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def parse_blocks(text: str) -> list[Block]:
    """Split *text* into blocks.

    Args:
        text: Decoded document text.

    Returns:
        Blocks in document order.  Empty text yields an empty list.
    """
    return [make_block("".join(chunk)) for chunk in _split_chunks(text)]


def _split_chunks(text: str) -> list[list[str]]:
    lines = text.splitlines(keepends=True)
    chunks: list[list[str]] = []
    current: list[str] = []
    current_kind: str | None = None
    saw_blank = False
    fence: str | None = None
    start = 0

    # YAML front matter is only recognised on the very first line.
    if lines and lines[0].rstrip("\r\n") == "---":
        for idx in range(1, len(lines)):
            if lines[idx].strip() in _FRONTMATTER_CLOSE:
                current = lines[: idx + 1]
                current_kind = "frontmatter"
                start = idx + 1
                break

    def has_content() -> bool:
        return any(line.strip() for line in current)

    for line in lines[start:]:
        if fence is not None:
            current.append(line)
            if _closes_fence(line, fence):
                fence = None
            continue

        if not line.strip():
            current.append(line)
            if has_content():
                saw_blank = True
            continue

        fence_match = _FENCE_RE.match(line)
        if fence_match:
            kind, starts = "fence", True
        elif _HEADING_RE.match(line):
            kind, starts = "heading", True
        elif _RULE_RE.match(line):
            kind, starts = "rule", True
        elif _LIST_RE.match(line):
            kind, starts = "list", True
        elif current_kind == "list" and (
            not saw_blank or line[:1] in (" ", "\t")
        ):
            kind, starts = "list", False
        elif current_kind == "text" and not saw_blank:
            kind, starts = "text", False
        else:
            kind, starts = "text", True

        if starts and has_content():
            chunks.append(current)
            current = []
        current.append(line)
        current_kind = kind
        saw_blank = False
        if fence_match:
            fence = fence_match.group(1)

    if current:
        chunks.append(current)
    return chunks


def _closes_fence(line: str, fence: str) -> bool:
    stripped = line.strip()
    return (
        len(stripped) >= len(fence)
        and stripped == fence[0] * len(stripped)
    )


def make_block(text: str) -> Block:
    """Build a single block from its raw text."""
    if text.startswith("---") and _is_frontmatter(text):
        kind, level = BlockKind.FRONTMATTER, 0
    else:
        kind, level = _classify_chunk(text)
    return Block(
        kind=kind,
        text=text,
        key=normalize_block(kind, text),
        level=level,
    )


def _is_frontmatter(text: str) -> bool:
    lines = text.splitlines()
    if len(lines) < 2 or lines[0] != "---":
        return False
    body = [line.strip() for line in lines[1:] if line.strip()]
    return bool(body) and body[-1] in _FRONTMATTER_CLOSE


@lru_cache(maxsize=4096)
def _classify_chunk(text: str) -> tuple[BlockKind, int]:
    """Classify a chunk by the first block token mistune produces."""
    tokens = [t for t in _MARKDOWN(text) if t["type"] != "blank_line"]
    if not tokens:
        return BlockKind.BLANK, 0

    first = tokens[0]
    match first["type"]:
        case "heading":
            return BlockKind.HEADING, int(first.get("attrs", {}).get("level", 1))
        case "list":
            return BlockKind.LIST_ITEM, 0
        case "block_code":
            return BlockKind.CODE, 0
        case "block_quote":
            return BlockKind.QUOTE, 0
        case "thematic_break":
            return BlockKind.RULE, 0
        case "table":
            return BlockKind.TABLE, 0
        case "block_html":
            return BlockKind.HTML, 0
        case _:
            return BlockKind.PARAGRAPH, 0


# ---------------------------------------------------------------------------
# Normalisation and comparison
# ---------------------------------------------------------------------------


def normalize_block(kind: BlockKind, text: str) -> str:
    """Return the comparison key for a block of *kind* with raw *text*."""
    match kind:
        case BlockKind.PARAGRAPH | BlockKind.QUOTE:
            return " ".join(text.split())
        case BlockKind.HEADING:
            return " ".join(text.strip().rstrip("#").split())
        case BlockKind.LIST_ITEM:
            collapsed = " ".join(text.split())
            collapsed = _ORDERED_MARKER_RE.sub("1.", collapsed, count=1)
            return _BULLET_MARKER_RE.sub("-", collapsed, count=1)
        case BlockKind.TABLE:
            rows = [
                _TABLE_CELL_RE.sub("|", line.strip())
                for line in text.splitlines()
                if line.strip()
            ]
            return "\n".join(rows)
        case BlockKind.CODE | BlockKind.HTML | BlockKind.FRONTMATTER:
            return "\n".join(
                line.rstrip() for line in text.splitlines()
            ).strip("\n")
        case BlockKind.RULE:
            return "---"
        case BlockKind.BLANK:
            return ""
        case _:  # pragma: no cover
            raise ValueError(f"Unhandled block kind: {kind!r}")


def similarity(a: Block, b: Block) -> float:
    """Content similarity of two blocks in ``[0.0, 1.0]``.

    Blocks of different kinds never match.
    """
    if a.kind != b.kind:
        return 0.0
    if a.key == b.key:
        return 1.0
    matcher = difflib.SequenceMatcher(None, a.key, b.key, autojunk=False)
    return matcher.ratio()


def outline(blocks: list[Block]) -> list[str]:
    """Structural outline: block kinds (and heading levels) in order."""
    return [
        f"{b.kind.value}:{b.level}" if b.kind == BlockKind.HEADING else b.kind.value
        for b in blocks
        if b.kind != BlockKind.BLANK
    ]


def join_blocks(blocks: list[Block]) -> str:
    """Concatenate blocks back into text.

    A block that ended its source document may lack a trailing newline;
    when another block follows it a newline is added (a blank line when
    the two would otherwise run together as one paragraph).
    """
    parts: list[str] = []
    previous: Block | None = None
    for block in blocks:
        if previous is not None and not previous.text.endswith("\n"):
            parts.append("\n")
            if _needs_blank_line(previous.kind, block.kind):
                parts.append("\n")
        parts.append(block.text)
        previous = block
    return "".join(parts)


def _needs_blank_line(previous: BlockKind, following: BlockKind) -> bool:
    if previous in (BlockKind.HEADING, BlockKind.FRONTMATTER, BlockKind.BLANK):
        return False
    if previous == BlockKind.LIST_ITEM and following == BlockKind.LIST_ITEM:
        return False
    return True
