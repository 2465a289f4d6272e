"""Change detector: three-way classification of a document.

Compares the current local and remote fingerprints against the fingerprints
recorded in the Version Store at the last successful sync.  The detector
never touches a replica: the caller supplies both current fingerprints.

Each side is compared against its *own* stored fingerprint.  After a
completed pass both records hold the same fingerprint (the common base);
comparing per side keeps classification correct when a previous pass was
interrupted between writing content and committing.
"""

from __future__ import annotations

import logging
from typing import NamedTuple

from vault_sync.exceptions import AmbiguousOrigin
from vault_sync.sync.models import Classification, Detection, Fingerprint, Side
from vault_sync.sync.state import VersionStore

logger = logging.getLogger(__name__)


class Verdict(NamedTuple):
    """Result of the pure classification rule."""

    classification: Classification
    ambiguous_origin: bool = False
    deleted_side: Side | None = None


def classify_fingerprints(
    local: Fingerprint | None,
    remote: Fingerprint | None,
    base_local: Fingerprint | None,
    base_remote: Fingerprint | None,
) -> Verdict:
    """Classify a document from its current and recorded fingerprints.

    Args:
        local: Current local fingerprint, ``None`` if the document is absent
            locally.
        remote: Current remote fingerprint, ``None`` if absent remotely.
        base_local: Fingerprint recorded for the local replica.
        base_remote: Fingerprint recorded for the remote replica.

    Returns:
        The ``Verdict`` for the document.
    """
    if base_local is None and base_remote is None:
        # Never synced: a new document (or a leftover with nothing on
        # either side).
        if local is None and remote is None:
            return Verdict(Classification.DELETED)
        if remote is None:
            return Verdict(Classification.LOCAL_ONLY)
        if local is None:
            return Verdict(Classification.REMOTE_ONLY)
        if local.same_content(remote):
            return Verdict(Classification.CONVERGED)
        return Verdict(Classification.BOTH_MODIFIED, ambiguous_origin=True)

    # A record for one replica only serves as the base for both.
    base_l = base_local or base_remote
    base_r = base_remote or base_local

    if local is None and remote is None:
        return Verdict(Classification.DELETED)
    if local is None:
        if remote.same_content(base_r):
            return Verdict(Classification.DELETED, deleted_side=Side.LOCAL)
        return Verdict(Classification.BOTH_MODIFIED, deleted_side=Side.LOCAL)
    if remote is None:
        if local.same_content(base_l):
            return Verdict(Classification.DELETED, deleted_side=Side.REMOTE)
        return Verdict(Classification.BOTH_MODIFIED, deleted_side=Side.REMOTE)

    local_changed = not local.same_content(base_l)
    remote_changed = not remote.same_content(base_r)

    if local.same_content(remote):
        if local_changed or remote_changed:
            return Verdict(Classification.CONVERGED)
        return Verdict(Classification.UNCHANGED)
    if local_changed and remote_changed:
        return Verdict(Classification.BOTH_MODIFIED)
    if local_changed:
        return Verdict(Classification.LOCAL_ONLY)
    if remote_changed:
        return Verdict(Classification.REMOTE_ONLY)

    # Both sides match their own records, yet differ: the records disagree
    # and there is no single ancestor to trust.
    return Verdict(Classification.BOTH_MODIFIED, ambiguous_origin=True)


def _structure_changed(
    current: Fingerprint | None, base: Fingerprint | None
) -> bool:
    return (
        current is not None
        and base is not None
        and current.structure_hash != base.structure_hash
    )


class ChangeDetector:
    """Classifies documents against the Version Store.

    Args:
        store: Version Store holding the last synced fingerprints.
        local_replica_id: Replica ID of the local vault.
        remote_replica_id: Replica ID of the remote replica.
    """

    def __init__(
        self,
        store: VersionStore,
        local_replica_id: str,
        remote_replica_id: str,
    ) -> None:
        self._store = store
        self._local_id = local_replica_id
        self._remote_id = remote_replica_id

    def classify(
        self,
        document_id: str,
        local_fingerprint: Fingerprint | None,
        remote_fingerprint: Fingerprint | None,
    ) -> Detection:
        """Classify *document_id* given its current fingerprints.

        Raises:
            StoreCorruption: If the stored records cannot be read.
        """
        local_record = self._store.get(document_id, self._local_id)
        remote_record = self._store.get(document_id, self._remote_id)
        base_local = local_record.fingerprint if local_record else None
        base_remote = remote_record.fingerprint if remote_record else None

        verdict = classify_fingerprints(
            local_fingerprint, remote_fingerprint, base_local, base_remote
        )
        if verdict.ambiguous_origin:
            logger.warning("%s; treating as a conflict", AmbiguousOrigin(document_id))

        detection = Detection(
            document_id=document_id,
            classification=verdict.classification,
            local_fingerprint=local_fingerprint,
            remote_fingerprint=remote_fingerprint,
            base_local=base_local,
            base_remote=base_remote,
            local_clock=local_record.clock if local_record else None,
            remote_clock=remote_record.clock if remote_record else None,
            ambiguous_origin=verdict.ambiguous_origin,
            deleted_side=verdict.deleted_side,
            structural_change=(
                _structure_changed(local_fingerprint, base_local or base_remote)
                or _structure_changed(remote_fingerprint, base_remote or base_local)
            ),
        )
        logger.debug(
            "Classified %s as %s", document_id, detection.classification.value
        )
        return detection
