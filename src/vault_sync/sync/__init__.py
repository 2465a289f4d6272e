"""Vault synchronization and conflict-resolution engine.

Public API for reconciling a local vault with a remote replica.

Architecture
------------
Each document is tracked per replica in a **Version Store** (last synced
fingerprint plus a causal clock).  A pass fingerprints both sides, compares
each against its own stored fingerprint, fast-forwards one-sided changes
and runs a **block-level three-way merge** when both sides changed.  Merges
that cannot be decided are kept, both variants verbatim, as conflicts for
the user.

Modules:

- ``engine``      -- ``ReconciliationCoordinator``: runs a pass.
- ``state``       -- ``JsonVersionStore`` / ``MemoryVersionStore``.
- ``detector``    -- ``ChangeDetector``: three-way classification.
- ``merger``      -- ``MergeEngine``: block-level merge, ``merge3`` previews.
- ``blocks``      -- Markdown block model (``mistune``).
- ``fingerprint`` -- content and structure hashing.
- ``host``        -- ``LocalVault`` / ``RemoteReplica`` protocols and
  reference replicas.
- ``models``      -- core data contracts.
- ``reporter``    -- human-readable and JSON summaries.

Usage example
-------------
::

    from pathlib import Path
    from vault_sync.config import load_config
    from vault_sync.sync import (
        DirectoryReplica, JsonVersionStore, ReconciliationCoordinator,
        format_sync_summary,
    )

    vault = Path("~/vault").expanduser()
    config = load_config({"local_replica_id": "laptop"}, vault_root=vault).sync
    local = DirectoryReplica(vault, config.exclude)
    remote = DirectoryReplica(Path("/mnt/share/vault"), config.exclude)
    store = JsonVersionStore(vault / config.state_dir)

    coordinator = ReconciliationCoordinator(store, local, config, remote)
    summary = coordinator.run(local.listing(), remote.listing())
    print(format_sync_summary(summary))
"""

from .detector import ChangeDetector, classify_fingerprints
from .engine import ReconciliationCoordinator
from .fingerprint import fingerprint
from .host import DirectoryReplica, LocalVault, MemoryReplica, RemoteReplica
from .merger import MergeEngine, generate_diff
from .models import (
    Classification,
    ConflictRecord,
    Detection,
    Document,
    DocumentResult,
    Fingerprint,
    ListingEntry,
    Merged,
    MergeOutcome,
    Removed,
    ResultStatus,
    Side,
    SyncAction,
    SyncPhase,
    SyncSummary,
    Unresolved,
    VersionRecord,
)
from .reporter import format_conflict, format_sync_summary, summary_to_json
from .state import JsonVersionStore, MemoryVersionStore, VersionStore

__all__ = [
    "ChangeDetector",
    "Classification",
    "ConflictRecord",
    "Detection",
    "DirectoryReplica",
    "Document",
    "DocumentResult",
    "Fingerprint",
    "JsonVersionStore",
    "ListingEntry",
    "LocalVault",
    "MemoryReplica",
    "MemoryVersionStore",
    "MergeEngine",
    "MergeOutcome",
    "Merged",
    "ReconciliationCoordinator",
    "RemoteReplica",
    "Removed",
    "ResultStatus",
    "Side",
    "SyncAction",
    "SyncPhase",
    "SyncSummary",
    "Unresolved",
    "VersionRecord",
    "VersionStore",
    "classify_fingerprints",
    "fingerprint",
    "format_conflict",
    "format_sync_summary",
    "generate_diff",
    "summary_to_json",
]
