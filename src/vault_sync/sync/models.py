"""Pydantic models for the vault sync engine.

Defines the core data contracts used across all sync modules:

- ``Fingerprint``: content hash plus structural digest of a document.
- ``Document``: a named unit of content read from (or proposed to) a vault.
- ``VersionRecord``: last synchronized fingerprint and causal clock of one
  document on one replica.
- ``Detection``: output of the change detector for one document.
- ``Merged`` / ``Unresolved`` / ``Removed``: merge outcomes.
- ``ConflictRecord``: an unresolved conflict kept for user arbitration.
- ``DocumentResult`` / ``SyncSummary``: results of a reconciliation pass.

All models are frozen (immutable) for safety.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, Field


class Side(str, Enum):
    """One of the two replicas taking part in a pass."""

    LOCAL = "local"
    REMOTE = "remote"


class Classification(str, Enum):
    """How a document changed since the last agreed state."""

    UNCHANGED = "unchanged"
    LOCAL_ONLY = "local_only"
    REMOTE_ONLY = "remote_only"
    CONVERGED = "converged"
    BOTH_MODIFIED = "both_modified"
    DELETED = "deleted"


class SyncAction(str, Enum):
    """Operation performed for a document during the commit phase."""

    SKIP = "skip"
    PUSH = "push"
    PULL = "pull"
    MERGE = "merge"
    CONFLICT = "conflict"
    DELETE_LOCAL = "delete_local"
    DELETE_REMOTE = "delete_remote"
    FORGET = "forget"


class ResultStatus(str, Enum):
    """Final state of a document after a pass."""

    UNCHANGED = "unchanged"
    FAST_FORWARDED = "fast_forwarded"
    MERGED = "merged"
    UNRESOLVED = "unresolved"
    DELETED = "deleted"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncPhase(str, Enum):
    """Coordinator state machine."""

    IDLE = "idle"
    SCANNING = "scanning"
    CLASSIFYING = "classifying"
    MERGING = "merging"
    COMMITTING = "committing"


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------


class Fingerprint(BaseModel):
    """Fixed-size identity of a document state.

    Attributes:
        content_hash: SHA-256 hex digest of the raw bytes.
        structure_hash: SHA-256 hex digest of the block outline.
        size: Content length in bytes.
        algorithm: Hash algorithm name.
    """

    content_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    structure_hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    size: int = Field(ge=0)
    algorithm: str = "sha256"

    model_config = {"frozen": True}

    def same_content(self, other: Fingerprint | None) -> bool:
        """Return ``True`` if *other* fingerprints identical bytes."""
        return other is not None and other.content_hash == self.content_hash

    @property
    def short(self) -> str:
        """Abbreviated content hash for log messages."""
        return self.content_hash[:12]


class Document(BaseModel):
    """A document as seen on one replica.

    Attributes:
        document_id: Vault-relative POSIX path (or other stable ID).
        content: Raw bytes.
        mtime: Modification time reported by the host, if known.
        metadata: Free-form host metadata.
    """

    document_id: str
    content: bytes
    mtime: float | None = None
    metadata: dict[str, Any] = {}

    model_config = {
        "frozen": True,
        "ser_json_bytes": "base64",
        "val_json_bytes": "base64",
    }


class ListingEntry(BaseModel):
    """One document in a host-supplied replica listing."""

    document_id: str
    size: int | None = None
    mtime: float | None = None

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Version Store records
# ---------------------------------------------------------------------------


class VersionRecord(BaseModel):
    """Synchronization state of one document on one replica.

    Attributes:
        document_id: Document identifier.
        replica_id: Replica identifier.
        fingerprint: Fingerprint observed at the last successful sync.
        clock: Causal clock, strictly increasing per document/replica pair.
        committed_at: ISO 8601 timestamp of the commit.
    """

    document_id: str
    replica_id: str
    fingerprint: Fingerprint
    clock: int = Field(ge=1)
    committed_at: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------


class Detection(BaseModel):
    """Classification of one document for the current pass.

    Attributes:
        document_id: Document identifier.
        classification: How the document changed.
        local_fingerprint: Current local fingerprint (``None`` if absent).
        remote_fingerprint: Current remote fingerprint (``None`` if absent).
        base_local: Fingerprint stored for the local replica.
        base_remote: Fingerprint stored for the remote replica.
        local_clock: Clock of the local record at classification time.
        remote_clock: Clock of the remote record at classification time.
        ambiguous_origin: Both sides differ and no ancestor is known.
        deleted_side: Side on which the document disappeared, if any.
        structural_change: The block outline differs from the base.
    """

    document_id: str
    classification: Classification
    local_fingerprint: Fingerprint | None = None
    remote_fingerprint: Fingerprint | None = None
    base_local: Fingerprint | None = None
    base_remote: Fingerprint | None = None
    local_clock: int | None = None
    remote_clock: int | None = None
    ambiguous_origin: bool = False
    deleted_side: Side | None = None
    structural_change: bool = False

    model_config = {"frozen": True}

    @property
    def base(self) -> Fingerprint | None:
        """Common ancestor fingerprint, preferring the local record."""
        return self.base_local or self.base_remote


# ---------------------------------------------------------------------------
# Merge outcomes
# ---------------------------------------------------------------------------


class BlockConflict(BaseModel):
    """A region the merge could not decide.

    Attributes:
        kind: ``"edit"`` (both sides changed one block differently),
            ``"insert"`` (both sides inserted different blocks at one
            position) or ``"frontmatter"``.
        base_text: Base text of the region (empty for insertions).
        local_text: Local text of the region.
        remote_text: Remote text of the region.
        position: Index of the base block the region is anchored to
            (``-1`` for the start of the document).
    """

    kind: str
    base_text: str = ""
    local_text: str
    remote_text: str
    position: int

    model_config = {"frozen": True}


class Merged(BaseModel):
    """The merge produced a single document."""

    kind: Literal["merged"] = "merged"
    content: bytes

    model_config = {"frozen": True}


class Unresolved(BaseModel):
    """The merge left conflicts; both variants are preserved verbatim."""

    kind: Literal["unresolved"] = "unresolved"
    local: Document
    remote: Document
    reason: str
    conflicts: list[BlockConflict] = []
    preview: str | None = None

    model_config = {"frozen": True}


class Removed(BaseModel):
    """The deletion of a document wins over the other side's edit."""

    kind: Literal["removed"] = "removed"
    reason: str

    model_config = {"frozen": True}


MergeOutcome = Union[Merged, Unresolved, Removed]


class ConflictRecord(BaseModel):
    """Unresolved conflict persisted for user arbitration.

    Attributes:
        document_id: Document identifier.
        base_fingerprint: Common ancestor, if any.
        local: Local variant, verbatim.
        remote: Remote variant, verbatim.
        local_fingerprint: Fingerprint of the local variant.
        remote_fingerprint: Fingerprint of the remote variant.
        reason: Why the merge could not complete.
        conflicts: Individual block conflicts.
        preview: Merged text with ``<<<<<<< LOCAL`` markers for display.
        detected_at: ISO 8601 timestamp.
    """

    document_id: str
    base_fingerprint: Fingerprint | None = None
    local: Document
    remote: Document
    local_fingerprint: Fingerprint
    remote_fingerprint: Fingerprint
    reason: str
    conflicts: list[BlockConflict] = []
    preview: str | None = None
    detected_at: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Pass results
# ---------------------------------------------------------------------------


class DocumentResult(BaseModel):
    """Result of reconciling one document.

    Attributes:
        document_id: Document identifier.
        classification: Detector classification (``None`` if detection
            itself failed).
        action: Operation performed.
        status: Final state.
        committed: Whether Version Store records were written.
        error: Error or explanatory message.
    """

    document_id: str
    classification: Classification | None = None
    action: SyncAction = SyncAction.SKIP
    status: ResultStatus
    committed: bool = False
    error: str | None = None

    model_config = {"frozen": True}


class SyncSummary(BaseModel):
    """Aggregate report for a reconciliation pass.

    Attributes:
        local_replica_id: Local replica identifier.
        remote_replica_id: Remote replica identifier.
        results: Per-document results.
        started_at: ISO 8601 timestamp when the pass started.
        completed_at: ISO 8601 timestamp when the pass completed.
        cancelled: Whether the pass was cancelled.
        not_processed: Documents left untouched because of cancellation.
    """

    local_replica_id: str
    remote_replica_id: str
    results: list[DocumentResult] = []
    started_at: str
    completed_at: str | None = None
    cancelled: bool = False
    not_processed: list[str] = []

    model_config = {"frozen": True}

    def _with_status(self, status: ResultStatus) -> list[DocumentResult]:
        return [r for r in self.results if r.status == status]

    @property
    def unchanged(self) -> list[DocumentResult]:
        """Results where nothing had to be transferred."""
        return self._with_status(ResultStatus.UNCHANGED)

    @property
    def fast_forwarded(self) -> list[DocumentResult]:
        """Results where one side was brought up to date."""
        return self._with_status(ResultStatus.FAST_FORWARDED)

    @property
    def merged(self) -> list[DocumentResult]:
        """Results where divergent edits were merged automatically."""
        return self._with_status(ResultStatus.MERGED)

    @property
    def unresolved(self) -> list[DocumentResult]:
        """Results waiting for user arbitration."""
        return self._with_status(ResultStatus.UNRESOLVED)

    @property
    def deleted(self) -> list[DocumentResult]:
        """Results where a deletion was propagated or confirmed."""
        return self._with_status(ResultStatus.DELETED)

    @property
    def failed(self) -> list[DocumentResult]:
        """Results where processing the document failed."""
        return self._with_status(ResultStatus.FAILED)

    @property
    def skipped(self) -> list[DocumentResult]:
        """Results skipped because their records changed during the pass."""
        return self._with_status(ResultStatus.SKIPPED)

    @property
    def unresolved_ids(self) -> list[str]:
        """Document IDs needing user arbitration."""
        return [r.document_id for r in self.unresolved]

    @property
    def commits(self) -> int:
        """Number of documents whose Version Store records were written."""
        return sum(1 for r in self.results if r.committed)

    def counts(self) -> dict[str, int]:
        """Return result counts keyed by status name."""
        return {
            "unchanged": len(self.unchanged),
            "fast_forwarded": len(self.fast_forwarded),
            "merged": len(self.merged),
            "unresolved": len(self.unresolved),
            "deleted": len(self.deleted),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
        }
