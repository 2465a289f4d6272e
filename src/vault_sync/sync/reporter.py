"""Rendering of pass summaries and pending conflicts for the host UI.

- ``format_sync_summary`` -- full post-pass summary.
- ``format_conflict`` -- unified diff and marker preview for one conflict.
- ``summary_to_json`` -- structured dict for the host's own rendering.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from .merger import generate_diff

if TYPE_CHECKING:
    from .models import ConflictRecord, SyncSummary

_PREVIEW_LINES = 20

# ------------------------------------------------------------------
# Human-readable summary
# ------------------------------------------------------------------


def format_sync_summary(summary: SyncSummary) -> str:
    """Format a pass summary as human-readable text.

    Sections are only included when they contain at least one result.
    Unchanged documents are summarised by count only to avoid excessive
    output.

    Args:
        summary: The completed pass summary.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = []

    header = (
        f"Sync {summary.local_replica_id} <-> {summary.remote_replica_id}"
    )
    if summary.cancelled:
        header += " (CANCELLED)"
    lines.append(header)
    lines.append(f"Started: {summary.started_at}")
    if summary.completed_at:
        lines.append(f"Completed: {summary.completed_at}")
    lines.append("")

    counts = summary.counts()
    lines.append(
        f"{len(summary.results)} documents: "
        f"{counts['unchanged']} unchanged, "
        f"{counts['fast_forwarded']} fast-forwarded, "
        f"{counts['merged']} merged, "
        f"{counts['unresolved']} unresolved, "
        f"{counts['failed']} failed"
    )
    lines.append("")

    if summary.fast_forwarded:
        lines.append("Fast-forwarded:")
        for r in summary.fast_forwarded:
            lines.append(f"  [{r.action.value}] {r.document_id}")
        lines.append("")

    if summary.merged:
        lines.append("Merged automatically:")
        for r in summary.merged:
            lines.append(f"  {r.document_id}")
        lines.append("")

    if summary.deleted:
        lines.append("Deleted:")
        for r in summary.deleted:
            lines.append(f"  [{r.action.value}] {r.document_id}")
        lines.append("")

    if summary.unresolved:
        lines.append("Needs resolution:")
        for r in summary.unresolved:
            lines.append(f"  {r.document_id}: {r.error or 'conflicting edits'}")
        lines.append("")

    if summary.failed:
        lines.append("Errors:")
        for r in summary.failed:
            lines.append(f"  {r.document_id}: {r.error}")
        lines.append("")

    if summary.skipped:
        lines.append(f"Skipped: {len(summary.skipped)} documents (changed during pass)")
        lines.append("")

    if summary.not_processed:
        lines.append(f"Not processed: {len(summary.not_processed)} documents")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# Conflict review
# ------------------------------------------------------------------


def format_conflict(conflict: ConflictRecord) -> str:
    """Format a single conflict for user review.

    Shows a unified diff between the local and remote variants, plus the
    first lines of the marker preview when available.

    Args:
        conflict: The pending conflict.

    Returns:
        Multi-line formatted string.
    """
    lines: list[str] = [f"Conflict: {conflict.document_id}", f"Reason: {conflict.reason}", ""]

    try:
        local_text = conflict.local.content.decode("utf-8")
        remote_text = conflict.remote.content.decode("utf-8")
    except UnicodeDecodeError:
        lines.append(
            f"(binary content: local {len(conflict.local.content)} bytes, "
            f"remote {len(conflict.remote.content)} bytes)"
        )
        return "\n".join(lines)

    diff_text = generate_diff(
        local_text,
        remote_text,
        label_old=f"local: {conflict.document_id}",
        label_new=f"remote: {conflict.document_id}",
    )
    lines.append(diff_text.rstrip() if diff_text else "(no textual differences)")
    lines.append("")

    if conflict.preview is not None:
        lines.append("--- Conflict preview ---")
        preview_lines = conflict.preview.splitlines()
        for pl in preview_lines[:_PREVIEW_LINES]:
            lines.append(f"  {pl}")
        if len(preview_lines) > _PREVIEW_LINES:
            lines.append(f"  ... ({len(preview_lines) - _PREVIEW_LINES} more lines)")
        lines.append("")

    return "\n".join(lines).rstrip()


# ------------------------------------------------------------------
# JSON output
# ------------------------------------------------------------------


def summary_to_json(summary: SyncSummary) -> dict:
    """Convert a pass summary to a structured dict for JSON serialisation.

    Args:
        summary: The pass summary.

    Returns:
        Dict with replica IDs, counts, and per-document details.
    """
    results_list = []
    for r in summary.results:
        entry: dict = {
            "document_id": r.document_id,
            "classification": r.classification.value if r.classification else None,
            "action": r.action.value,
            "status": r.status.value,
            "committed": r.committed,
        }
        if r.error:
            entry["error"] = r.error
        results_list.append(entry)

    return {
        "local_replica_id": summary.local_replica_id,
        "remote_replica_id": summary.remote_replica_id,
        "started_at": summary.started_at,
        "completed_at": summary.completed_at,
        "cancelled": summary.cancelled,
        "counts": summary.counts(),
        "commits": summary.commits,
        "unresolved_ids": summary.unresolved_ids,
        "not_processed": list(summary.not_processed),
        "results": results_list,
    }
