"""Reconciliation coordinator: one synchronization pass end to end.

The ``ReconciliationCoordinator`` ties together the Version Store, change
detector and merge engine.  A pass moves through the phases

    IDLE -> SCANNING -> CLASSIFYING -> MERGING -> COMMITTING -> IDLE

1. **Scanning** unions the host listings with the documents the store
   knows about (so deletions are seen).
2. **Classifying** fingerprints the local copy and asks the remote replica
   for its fingerprint, then classifies each document.
3. **Merging** runs the merge engine for every ``BOTH_MODIFIED`` document.
4. **Committing** writes content to the replicas and only then advances
   the Version Store records.

Classifying, merging and committing fan out over a pool of
``max_workers`` tasks consuming an ``asyncio.Queue``.  Blocking host and
store calls run in threads via ``run_sync``; fingerprinting and merging run
inline.

Error handling is per document: a failure is recorded as a ``FAILED``
result and the pass continues.  ``StoreCorruption`` is the exception: it
stops the workers and propagates out of ``begin_sync()``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath

from vault_sync.config_schema import SyncConfig
from vault_sync.core.async_utils import KeyedLock, gather_limited, run_sync
from vault_sync.exceptions import (
    ConflictNotFound,
    FingerprintFailure,
    StoreCorruption,
)
from vault_sync.sync.detector import ChangeDetector
from vault_sync.sync.fingerprint import fingerprint
from vault_sync.sync.host import LocalVault, RemoteReplica, is_excluded, listing_ids
from vault_sync.sync.merger import MergeEngine
from vault_sync.sync.models import (
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
from vault_sync.sync.state import VersionStore

logger = logging.getLogger(__name__)

Listing = Iterable[str | ListingEntry]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class _Work:
    """Per-document state carried between phases of one pass."""

    document_id: str
    in_local: bool
    in_remote: bool
    detection: Detection | None = None
    local_content: bytes | None = None
    remote_content: bytes | None = None
    outcome: MergeOutcome | None = None
    result: DocumentResult | None = None


class ReconciliationCoordinator:
    """Run synchronization passes between a local vault and a remote replica.

    Args:
        store: Version Store (injected; the coordinator never creates one).
        local: The device's own vault.
        config: Sync settings (replica IDs, workers, limits, merge policy).
        remote: Default remote replica for passes and conflict resolution.
    """

    def __init__(
        self,
        store: VersionStore,
        local: LocalVault,
        config: SyncConfig | None = None,
        remote: RemoteReplica | None = None,
    ) -> None:
        self.store = store
        self.local = local
        self.config = config or SyncConfig()
        self.remote = remote

        self.detector = ChangeDetector(
            store, self.config.local_replica_id, self.config.remote_replica_id
        )
        self.merger = MergeEngine(self.config.merge)
        self._locks = KeyedLock()
        self._phase = SyncPhase.IDLE
        self._cancel_requested = False

    @property
    def phase(self) -> SyncPhase:
        """Current phase of the running pass (``IDLE`` between passes)."""
        return self._phase

    def cancel(self) -> None:
        """Stop the running pass after the documents already in progress."""
        if self._phase != SyncPhase.IDLE:
            logger.info("Cancellation requested during %s", self._phase.value)
        self._cancel_requested = True

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def begin_sync(
        self,
        local_listing: Listing,
        remote_listing: Listing,
        remote: RemoteReplica | None = None,
    ) -> SyncSummary:
        """Run one reconciliation pass.

        Args:
            local_listing: Document IDs (or ``ListingEntry`` items) present
                in the local vault.
            remote_listing: Document IDs present on the remote replica.
            remote: Remote replica; defaults to the one given at construction.

        Returns:
            A ``SyncSummary`` for the pass.

        Raises:
            StoreCorruption: If the Version Store fails an invariant check.
            RuntimeError: If a pass is already running.
        """
        if self._phase != SyncPhase.IDLE:
            raise RuntimeError("A synchronization pass is already running")
        remote = self._remote_or_default(remote)
        self.remote = remote
        self._cancel_requested = False
        started_at = _now()

        try:
            self._phase = SyncPhase.SCANNING
            work = await self._scan(local_listing, remote_listing)
            logger.info(
                "Sync pass %s <-> %s: %d candidate document(s)",
                self.config.local_replica_id,
                self.config.remote_replica_id,
                len(work),
            )

            self._phase = SyncPhase.CLASSIFYING
            await self._fan_out(
                work, lambda w: self._classify(w, remote), SyncPhase.CLASSIFYING
            )

            self._phase = SyncPhase.MERGING
            to_merge = [
                w
                for w in work
                if w.result is None
                and w.detection is not None
                and w.detection.classification == Classification.BOTH_MODIFIED
            ]
            await self._fan_out(
                to_merge, lambda w: self._merge(w, remote), SyncPhase.MERGING
            )

            self._phase = SyncPhase.COMMITTING
            to_commit = [
                w for w in work if w.result is None and w.detection is not None
            ]
            await self._fan_out(
                to_commit, lambda w: self._commit(w, remote), SyncPhase.COMMITTING
            )
        finally:
            self._phase = SyncPhase.IDLE

        results = sorted(
            (w.result for w in work if w.result is not None),
            key=lambda r: r.document_id,
        )
        not_processed = sorted(w.document_id for w in work if w.result is None)
        summary = SyncSummary(
            local_replica_id=self.config.local_replica_id,
            remote_replica_id=self.config.remote_replica_id,
            results=results,
            started_at=started_at,
            completed_at=_now(),
            cancelled=self._cancel_requested,
            not_processed=not_processed,
        )
        logger.info("Sync pass finished: %s", summary.counts())
        return summary

    def run(
        self,
        local_listing: Listing,
        remote_listing: Listing,
        remote: RemoteReplica | None = None,
    ) -> SyncSummary:
        """Synchronous wrapper around ``begin_sync()``."""
        return asyncio.run(self.begin_sync(local_listing, remote_listing, remote))

    def get_unresolved_conflicts(self) -> list[ConflictRecord]:
        """Return pending conflicts for user arbitration."""
        return self.store.list_conflicts()

    async def resolve_conflict(
        self,
        document_id: str,
        chosen_content: bytes,
        remote: RemoteReplica | None = None,
    ) -> VersionRecord:
        """Commit the user's choice for a conflicted document.

        Writes *chosen_content* to both replicas, commits both records and
        clears the conflict.

        Returns:
            The new local ``VersionRecord``.

        Raises:
            ConflictNotFound: If no conflict is pending for *document_id*.
        """
        remote = self._remote_or_default(remote)
        async with self._locks.hold(document_id):
            conflict = await run_sync(self.store.get_conflict, document_id)
            if conflict is None:
                raise ConflictNotFound(document_id)

            fp = fingerprint(
                chosen_content,
                max_bytes=self.config.max_document_bytes,
                document_id=document_id,
            )
            await gather_limited(
                [
                    run_sync(self.local.apply, document_id, chosen_content),
                    run_sync(remote.apply, document_id, chosen_content),
                ],
                limit=2,
            )
            records = await run_sync(
                self.store.commit_many,
                document_id,
                self._both(fp),
                chosen_content,
            )
            await run_sync(self.store.clear_conflict, document_id)

        logger.info("Resolved conflict on %s (fp=%s)", document_id, fp.short)
        return next(
            r for r in records if r.replica_id == self.config.local_replica_id
        )

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    async def _fan_out(
        self,
        items: list[_Work],
        step: Callable[[_Work], Awaitable[None]],
        phase: SyncPhase,
    ) -> None:
        if not items:
            return
        queue: asyncio.Queue[_Work] = asyncio.Queue()
        for item in items:
            queue.put_nowait(item)

        async def worker() -> None:
            while not self._cancel_requested:
                try:
                    item = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await step(item)
                except StoreCorruption:
                    raise
                except Exception as exc:
                    logger.error(
                        "Error during %s of %s: %s",
                        phase.value,
                        item.document_id,
                        exc,
                    )
                    item.result = self._result(
                        item, ResultStatus.FAILED, error=str(exc)
                    )

        workers = [
            asyncio.create_task(worker())
            for _ in range(min(self.config.max_workers, len(items)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _scan(
        self, local_listing: Listing, remote_listing: Listing
    ) -> list[_Work]:
        local_ids = listing_ids(local_listing)
        remote_ids = listing_ids(remote_listing)
        known = await run_sync(self.store.document_ids)
        candidates = sorted(local_ids | remote_ids | set(known))
        # The store's own files never sync, whatever the exclude list says
        state_dir = PurePosixPath(self.config.state_dir).as_posix()
        exclude = [*self.config.exclude, f"{state_dir}/**"]
        return [
            _Work(
                document_id=doc_id,
                in_local=doc_id in local_ids,
                in_remote=doc_id in remote_ids,
            )
            for doc_id in candidates
            if not is_excluded(doc_id, exclude)
        ]

    async def _classify(self, work: _Work, remote: RemoteReplica) -> None:
        doc_id = work.document_id
        local_fp: Fingerprint | None = None
        if work.in_local:
            try:
                work.local_content = await run_sync(self.local.read, doc_id)
            except OSError as exc:
                raise FingerprintFailure(
                    f"Could not read local copy: {exc}", document_id=doc_id
                ) from exc
            if work.local_content is not None:
                local_fp = fingerprint(
                    work.local_content,
                    max_bytes=self.config.max_document_bytes,
                    document_id=doc_id,
                )

        remote_fp: Fingerprint | None = None
        if work.in_remote:
            try:
                remote_fp = await run_sync(remote.fingerprint, doc_id)
            except OSError as exc:
                raise FingerprintFailure(
                    f"Could not fingerprint remote copy: {exc}",
                    document_id=doc_id,
                ) from exc

        work.detection = await run_sync(
            self.detector.classify, doc_id, local_fp, remote_fp
        )

    async def _merge(self, work: _Work, remote: RemoteReplica) -> None:
        detection = work.detection
        doc_id = work.document_id

        if detection.remote_fingerprint is not None:
            work.remote_content = await self._fetch_remote(work, remote)
            if work.remote_content is None:
                work.result = self._result(
                    work, ResultStatus.SKIPPED, error="remote changed during pass"
                )
                return

        base: Document | None = None
        if detection.base is not None and not detection.ambiguous_origin:
            base_content = await run_sync(
                self.store.load_base, doc_id, detection.base
            )
            if base_content is not None:
                base = Document(document_id=doc_id, content=base_content)
            else:
                logger.warning("No base snapshot stored for %s", doc_id)

        if detection.deleted_side is not None:
            survivor_content = (
                work.remote_content
                if detection.deleted_side == Side.LOCAL
                else work.local_content
            )
            work.outcome = self.merger.merge_deletion(
                base,
                Document(document_id=doc_id, content=survivor_content),
                detection.deleted_side,
            )
            return

        work.outcome = self.merger.merge(
            base,
            Document(document_id=doc_id, content=work.local_content),
            Document(document_id=doc_id, content=work.remote_content),
        )

    async def _commit(self, work: _Work, remote: RemoteReplica) -> None:
        async with self._locks.hold(work.document_id):
            if await self._is_stale(work):
                work.result = self._result(
                    work,
                    ResultStatus.SKIPPED,
                    error="records changed during pass",
                )
                return
            work.result = await self._apply(work, remote)

    async def _apply(self, work: _Work, remote: RemoteReplica) -> DocumentResult:
        detection = work.detection
        doc_id = work.document_id

        match detection.classification:
            case Classification.UNCHANGED:
                return self._result(work, ResultStatus.UNCHANGED)

            case Classification.CONVERGED:
                await self._commit_content(work, work.local_content)
                return self._result(
                    work, ResultStatus.UNCHANGED, committed=True
                )

            case Classification.LOCAL_ONLY:
                await run_sync(remote.apply, doc_id, work.local_content)
                await self._commit_content(work, work.local_content)
                return self._result(
                    work,
                    ResultStatus.FAST_FORWARDED,
                    action=SyncAction.PUSH,
                    committed=True,
                )

            case Classification.REMOTE_ONLY:
                content = await self._fetch_remote(work, remote)
                if content is None:
                    return self._result(
                        work,
                        ResultStatus.SKIPPED,
                        error="remote changed during pass",
                    )
                await run_sync(self.local.apply, doc_id, content)
                await self._commit_content(work, content)
                return self._result(
                    work,
                    ResultStatus.FAST_FORWARDED,
                    action=SyncAction.PULL,
                    committed=True,
                )

            case Classification.DELETED:
                return await self._apply_deletion(work, remote, detection.deleted_side)

            case Classification.BOTH_MODIFIED:
                return await self._apply_outcome(work, remote)

            case _:  # pragma: no cover
                raise ValueError(
                    f"Unhandled classification: {detection.classification!r}"
                )

    async def _apply_outcome(
        self, work: _Work, remote: RemoteReplica
    ) -> DocumentResult:
        doc_id = work.document_id
        outcome = work.outcome

        match outcome:
            case Merged(content=content):
                if content != work.local_content:
                    await run_sync(self.local.apply, doc_id, content)
                if content != work.remote_content:
                    await run_sync(remote.apply, doc_id, content)
                await self._commit_content(work, content)
                logger.info("Merged %s", doc_id)
                return self._result(
                    work,
                    ResultStatus.MERGED,
                    action=SyncAction.MERGE,
                    committed=True,
                )

            case Removed(reason=reason):
                logger.info("Deletion of %s wins: %s", doc_id, reason)
                return await self._apply_deletion(
                    work, remote, work.detection.deleted_side
                )

            case Unresolved():
                await run_sync(self.store.save_conflict, self._conflict(work, outcome))
                logger.warning(
                    "Conflict on %s needs resolution: %s", doc_id, outcome.reason
                )
                return self._result(
                    work,
                    ResultStatus.UNRESOLVED,
                    action=SyncAction.CONFLICT,
                    error=outcome.reason,
                )

            case _:
                raise ValueError(f"No merge outcome for {doc_id}")

    async def _apply_deletion(
        self,
        work: _Work,
        remote: RemoteReplica,
        deleted_side: Side | None,
    ) -> DocumentResult:
        doc_id = work.document_id
        if deleted_side == Side.LOCAL:
            await run_sync(remote.delete, doc_id)
            action = SyncAction.DELETE_REMOTE
        elif deleted_side == Side.REMOTE:
            await run_sync(self.local.delete, doc_id)
            action = SyncAction.DELETE_LOCAL
        else:
            action = SyncAction.FORGET
        await run_sync(self.store.remove, doc_id)
        logger.info("Deleted %s (%s)", doc_id, action.value)
        return self._result(
            work, ResultStatus.DELETED, action=action, committed=True
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _remote_or_default(self, remote: RemoteReplica | None) -> RemoteReplica:
        remote = remote or self.remote
        if remote is None:
            raise ValueError("No remote replica supplied")
        return remote

    def _both(self, fp: Fingerprint) -> dict[str, Fingerprint]:
        return {
            self.config.local_replica_id: fp,
            self.config.remote_replica_id: fp,
        }

    async def _commit_content(self, work: _Work, content: bytes) -> None:
        fp = fingerprint(
            content,
            max_bytes=self.config.max_document_bytes,
            document_id=work.document_id,
        )
        await run_sync(
            self.store.commit_many, work.document_id, self._both(fp), content
        )
        await run_sync(self.store.clear_conflict, work.document_id)

    async def _fetch_remote(
        self, work: _Work, remote: RemoteReplica
    ) -> bytes | None:
        """Fetch remote bytes, or ``None`` if they no longer match the
        fingerprint seen during classification."""
        content = await run_sync(remote.fetch, work.document_id)
        expected = work.detection.remote_fingerprint
        if content is None or expected is None:
            return None
        actual = fingerprint(
            content,
            max_bytes=self.config.max_document_bytes,
            document_id=work.document_id,
        )
        if not actual.same_content(expected):
            logger.warning(
                "Remote copy of %s changed during the pass", work.document_id
            )
            return None
        return content

    async def _is_stale(self, work: _Work) -> bool:
        detection = work.detection
        local_record = await run_sync(
            self.store.get, work.document_id, self.config.local_replica_id
        )
        remote_record = await run_sync(
            self.store.get, work.document_id, self.config.remote_replica_id
        )
        local_clock = local_record.clock if local_record else None
        remote_clock = remote_record.clock if remote_record else None
        return (
            local_clock != detection.local_clock
            or remote_clock != detection.remote_clock
        )

    def _conflict(self, work: _Work, outcome: Unresolved) -> ConflictRecord:
        detection = work.detection
        return ConflictRecord(
            document_id=work.document_id,
            base_fingerprint=None if detection.ambiguous_origin else detection.base,
            local=outcome.local,
            remote=outcome.remote,
            local_fingerprint=detection.local_fingerprint,
            remote_fingerprint=detection.remote_fingerprint,
            reason=outcome.reason,
            conflicts=outcome.conflicts,
            preview=outcome.preview,
            detected_at=_now(),
        )

    @staticmethod
    def _result(
        work: _Work,
        status: ResultStatus,
        *,
        action: SyncAction = SyncAction.SKIP,
        committed: bool = False,
        error: str | None = None,
    ) -> DocumentResult:
        return DocumentResult(
            document_id=work.document_id,
            classification=(
                work.detection.classification if work.detection else None
            ),
            action=action,
            status=status,
            committed=committed,
            error=error,
        )
