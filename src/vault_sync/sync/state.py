"""Version Store: persisted synchronization state.

Tracks, per document and per replica, the fingerprint observed at the last
successful sync and a causal clock, plus the common-ancestor snapshot used
as merge base and any unresolved conflicts.

Two implementations share the ``VersionStore`` protocol:

* ``JsonVersionStore`` -- durable, one directory per document under
  ``state_dir/documents/``.
* ``MemoryVersionStore`` -- in-process dicts, for tests and hosts that
  persist state themselves.

Key design choices:

* **Atomic, durable commits** -- ``record.json`` is replaced through
  ``atomic_write()`` (temp file, fsync, ``os.replace()``, directory fsync)
  so a crash leaves either the old or the new record.  The base snapshot is
  written *before* the record that references it.
* **Per-key locking** -- commits to one document are serialized by a
  per-document lock; unrelated documents commit concurrently.
* **Versioned format** -- ``store.json`` carries a format name and version.
  Older versions are upgraded through ``_MIGRATIONS``; unknown versions are
  reported as ``StoreCorruption`` instead of being reinterpreted.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import threading
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from pydantic import ValidationError

from vault_sync.exceptions import StoreCorruption
from vault_sync.file_handler import atomic_write, fsync_directory, remove_file
from vault_sync.sync.models import ConflictRecord, Fingerprint, VersionRecord

logger = logging.getLogger(__name__)

STORE_FORMAT = "vault-sync-store"
STORE_VERSION = 1

_RECORD_FILE = "record.json"
_CONFLICT_FILE = "conflict.json"
_HEADER_FILE = "store.json"

# from-version -> upgrade function (state_dir) bringing the layout to
# from-version + 1.
_MIGRATIONS: dict[int, Callable[[Path], None]] = {}


class VersionStore(Protocol):
    """Protocol that all Version Store implementations satisfy."""

    def get(self, document_id: str, replica_id: str) -> VersionRecord | None:
        """Return the record for the pair, or ``None`` on first sync."""
        ...  # pragma: no cover

    def commit(
        self,
        document_id: str,
        replica_id: str,
        fingerprint: Fingerprint,
        base_content: bytes | None = None,
    ) -> VersionRecord:
        """Advance the pair's clock by one and store *fingerprint*."""
        ...  # pragma: no cover

    def commit_many(
        self,
        document_id: str,
        fingerprints: Mapping[str, Fingerprint],
        base_content: bytes | None = None,
    ) -> list[VersionRecord]:
        """Commit several replicas of one document atomically."""
        ...  # pragma: no cover

    def remove(self, document_id: str) -> None:
        """Drop every record, snapshot and conflict of *document_id*."""
        ...  # pragma: no cover

    def document_ids(self) -> list[str]:
        """Return all documents with records or pending conflicts."""
        ...  # pragma: no cover

    def load_base(
        self, document_id: str, fingerprint: Fingerprint
    ) -> bytes | None:
        """Return the stored snapshot matching *fingerprint*, if any."""
        ...  # pragma: no cover

    def save_conflict(self, conflict: ConflictRecord) -> None:
        """Persist an unresolved conflict (replacing an older one)."""
        ...  # pragma: no cover

    def get_conflict(self, document_id: str) -> ConflictRecord | None:
        """Return the pending conflict of *document_id*, if any."""
        ...  # pragma: no cover

    def list_conflicts(self) -> list[ConflictRecord]:
        """Return all pending conflicts ordered by document ID."""
        ...  # pragma: no cover

    def clear_conflict(self, document_id: str) -> bool:
        """Remove a pending conflict.  Returns ``False`` if none existed."""
        ...  # pragma: no cover


class _KeyLocks:
    """``threading.Lock`` per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _next_records(
    document_id: str,
    current: Mapping[str, VersionRecord],
    fingerprints: Mapping[str, Fingerprint],
) -> list[VersionRecord]:
    committed_at = _now()
    records = []
    for replica_id, fp in fingerprints.items():
        previous = current.get(replica_id)
        records.append(
            VersionRecord(
                document_id=document_id,
                replica_id=replica_id,
                fingerprint=fp,
                clock=previous.clock + 1 if previous else 1,
                committed_at=committed_at,
            )
        )
    return records


# ---------------------------------------------------------------------------
# Durable store
# ---------------------------------------------------------------------------


class JsonVersionStore:
    """Version Store persisted as JSON files under *state_dir*.

    Args:
        state_dir: Directory owned by the store (typically ``.vault_sync/``).
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir)
        self._documents_dir = self._state_dir / "documents"
        self._locks = _KeyLocks()
        self._layout_lock = threading.Lock()
        self._layout_ready = False

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def get(self, document_id: str, replica_id: str) -> VersionRecord | None:
        self._ensure_layout()
        return self._read_records(document_id).get(replica_id)

    def commit(
        self,
        document_id: str,
        replica_id: str,
        fingerprint: Fingerprint,
        base_content: bytes | None = None,
    ) -> VersionRecord:
        return self.commit_many(
            document_id, {replica_id: fingerprint}, base_content
        )[0]

    def commit_many(
        self,
        document_id: str,
        fingerprints: Mapping[str, Fingerprint],
        base_content: bytes | None = None,
    ) -> list[VersionRecord]:
        if not fingerprints:
            raise ValueError("commit_many() needs at least one fingerprint")
        self._ensure_layout()
        doc_dir = self._document_dir(document_id)

        with self._locks.hold(document_id):
            current = self._read_records(document_id)
            new_records = _next_records(document_id, current, fingerprints)
            merged = dict(current)
            merged.update({r.replica_id: r for r in new_records})

            doc_dir.mkdir(parents=True, exist_ok=True)
            if base_content is not None:
                base_hash = hashlib.sha256(base_content).hexdigest()
                base_path = doc_dir / f"base-{base_hash}.bin"
                if not base_path.exists():
                    atomic_write(base_path, base_content)

            payload = {
                "version": STORE_VERSION,
                "document_id": document_id,
                "replicas": {
                    rid: rec.model_dump(
                        mode="json", exclude={"document_id", "replica_id"}
                    )
                    for rid, rec in sorted(merged.items())
                },
            }
            atomic_write(
                doc_dir / _RECORD_FILE,
                json.dumps(payload, indent=2).encode("utf-8"),
            )
            self._prune_bases(doc_dir, merged.values())

        for rec in new_records:
            logger.debug(
                "Committed %s@%s clock=%d fp=%s",
                document_id,
                rec.replica_id,
                rec.clock,
                rec.fingerprint.short,
            )
        return new_records

    def remove(self, document_id: str) -> None:
        self._ensure_layout()
        doc_dir = self._document_dir(document_id)
        with self._locks.hold(document_id):
            if doc_dir.exists():
                shutil.rmtree(doc_dir)
                fsync_directory(self._documents_dir)
                logger.debug("Removed state for %s", document_id)

    def document_ids(self) -> list[str]:
        self._ensure_layout()
        ids: set[str] = set()
        for doc_dir in self._documents_dir.iterdir():
            if not doc_dir.is_dir():
                continue
            record_path = doc_dir / _RECORD_FILE
            conflict_path = doc_dir / _CONFLICT_FILE
            if record_path.exists():
                data = self._read_json(record_path)
                document_id = data.get("document_id")
                if not isinstance(document_id, str):
                    raise StoreCorruption(
                        "Record has no document_id", path=str(record_path)
                    )
                ids.add(document_id)
            elif conflict_path.exists():
                ids.add(self._read_conflict_file(conflict_path).document_id)
        return sorted(ids)

    def load_base(
        self, document_id: str, fingerprint: Fingerprint
    ) -> bytes | None:
        self._ensure_layout()
        path = (
            self._document_dir(document_id)
            / f"base-{fingerprint.content_hash}.bin"
        )
        if not path.exists():
            return None
        data = path.read_bytes()
        if hashlib.sha256(data).hexdigest() != fingerprint.content_hash:
            raise StoreCorruption(
                f"Base snapshot for '{document_id}' does not match its hash",
                path=str(path),
            )
        return data

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def save_conflict(self, conflict: ConflictRecord) -> None:
        self._ensure_layout()
        doc_dir = self._document_dir(conflict.document_id)
        with self._locks.hold(conflict.document_id):
            atomic_write(
                doc_dir / _CONFLICT_FILE,
                conflict.model_dump_json(indent=2).encode("utf-8"),
            )

    def get_conflict(self, document_id: str) -> ConflictRecord | None:
        self._ensure_layout()
        path = self._document_dir(document_id) / _CONFLICT_FILE
        if not path.exists():
            return None
        conflict = self._read_conflict_file(path)
        if conflict.document_id != document_id:
            raise StoreCorruption(
                f"Conflict file belongs to '{conflict.document_id}', "
                f"expected '{document_id}'",
                path=str(path),
            )
        return conflict

    def list_conflicts(self) -> list[ConflictRecord]:
        self._ensure_layout()
        conflicts = [
            self._read_conflict_file(path)
            for path in self._documents_dir.glob(f"*/{_CONFLICT_FILE}")
        ]
        return sorted(conflicts, key=lambda c: c.document_id)

    def clear_conflict(self, document_id: str) -> bool:
        self._ensure_layout()
        path = self._document_dir(document_id) / _CONFLICT_FILE
        with self._locks.hold(document_id):
            return remove_file(path)

    # ------------------------------------------------------------------
    # Layout and format version
    # ------------------------------------------------------------------

    def _ensure_layout(self) -> None:
        if self._layout_ready:
            return
        with self._layout_lock:
            if self._layout_ready:
                return
            header_path = self._state_dir / _HEADER_FILE
            if header_path.exists():
                header = self._read_json(header_path)
                self._check_header(header, header_path)
            elif self._documents_dir.exists() and any(
                self._documents_dir.iterdir()
            ):
                raise StoreCorruption(
                    "Store has documents but no format header",
                    path=str(header_path),
                )
            else:
                self._documents_dir.mkdir(parents=True, exist_ok=True)
                self._write_header()
                logger.info("Initialized version store at %s", self._state_dir)
            self._documents_dir.mkdir(parents=True, exist_ok=True)
            self._layout_ready = True

    def _check_header(self, header: dict, path: Path) -> None:
        if header.get("format") != STORE_FORMAT:
            raise StoreCorruption(
                f"Unknown store format: {header.get('format')!r}",
                path=str(path),
            )
        version = header.get("version")
        if not isinstance(version, int) or version < 1:
            raise StoreCorruption(
                f"Invalid store version: {version!r}", path=str(path)
            )
        if version > STORE_VERSION:
            raise StoreCorruption(
                f"Store version {version} is newer than supported "
                f"version {STORE_VERSION}",
                path=str(path),
            )
        while version < STORE_VERSION:
            migrate = _MIGRATIONS.get(version)
            if migrate is None:
                raise StoreCorruption(
                    f"No migration from store version {version}",
                    path=str(path),
                )
            logger.info(
                "Migrating version store %s from v%d to v%d",
                self._state_dir,
                version,
                version + 1,
            )
            migrate(self._state_dir)
            version += 1
            self._write_header(version)

    def _write_header(self, version: int | None = None) -> None:
        header = {
            "format": STORE_FORMAT,
            "version": STORE_VERSION if version is None else version,
            "updated_at": _now(),
        }
        atomic_write(
            self._state_dir / _HEADER_FILE,
            json.dumps(header, indent=2).encode("utf-8"),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _document_dir(self, document_id: str) -> Path:
        key = hashlib.sha256(document_id.encode("utf-8")).hexdigest()[:32]
        return self._documents_dir / key

    def _read_records(self, document_id: str) -> dict[str, VersionRecord]:
        path = self._document_dir(document_id) / _RECORD_FILE
        if not path.exists():
            return {}
        data = self._read_json(path)
        if data.get("document_id") != document_id:
            raise StoreCorruption(
                f"Record belongs to {data.get('document_id')!r}, "
                f"expected {document_id!r}",
                path=str(path),
            )
        replicas = data.get("replicas")
        if not isinstance(replicas, dict):
            raise StoreCorruption("Record has no replicas table", path=str(path))

        records: dict[str, VersionRecord] = {}
        for replica_id, raw in replicas.items():
            try:
                records[replica_id] = VersionRecord(
                    document_id=document_id, replica_id=replica_id, **raw
                )
            except (TypeError, ValidationError) as exc:
                raise StoreCorruption(
                    f"Invalid record for {document_id}@{replica_id}: {exc}",
                    path=str(path),
                ) from exc
        return records

    def _read_conflict_file(self, path: Path) -> ConflictRecord:
        try:
            return ConflictRecord.model_validate_json(path.read_bytes())
        except ValidationError as exc:
            raise StoreCorruption(
                f"Invalid conflict file: {exc}", path=str(path)
            ) from exc

    @staticmethod
    def _read_json(path: Path) -> dict:
        try:
            with open(path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise StoreCorruption(
                f"Unreadable state file: {exc}", path=str(path)
            ) from exc
        if not isinstance(data, dict):
            raise StoreCorruption("State file root is not an object", path=str(path))
        return data

    @staticmethod
    def _prune_bases(doc_dir: Path, records) -> None:
        keep = {f"base-{r.fingerprint.content_hash}.bin" for r in records}
        for path in doc_dir.glob("base-*.bin"):
            if path.name not in keep:
                remove_file(path)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class MemoryVersionStore:
    """Version Store kept in process memory.

    Same semantics as ``JsonVersionStore`` without durability.
    """

    def __init__(self) -> None:
        self._records: dict[str, dict[str, VersionRecord]] = {}
        self._bases: dict[str, dict[str, bytes]] = {}
        self._conflicts: dict[str, ConflictRecord] = {}
        self._locks = _KeyLocks()

    def get(self, document_id: str, replica_id: str) -> VersionRecord | None:
        return self._records.get(document_id, {}).get(replica_id)

    def commit(
        self,
        document_id: str,
        replica_id: str,
        fingerprint: Fingerprint,
        base_content: bytes | None = None,
    ) -> VersionRecord:
        return self.commit_many(
            document_id, {replica_id: fingerprint}, base_content
        )[0]

    def commit_many(
        self,
        document_id: str,
        fingerprints: Mapping[str, Fingerprint],
        base_content: bytes | None = None,
    ) -> list[VersionRecord]:
        if not fingerprints:
            raise ValueError("commit_many() needs at least one fingerprint")
        with self._locks.hold(document_id):
            current = self._records.get(document_id, {})
            new_records = _next_records(document_id, current, fingerprints)
            merged = dict(current)
            merged.update({r.replica_id: r for r in new_records})

            bases = dict(self._bases.get(document_id, {}))
            if base_content is not None:
                bases[hashlib.sha256(base_content).hexdigest()] = bytes(
                    base_content
                )
            keep = {r.fingerprint.content_hash for r in merged.values()}
            self._bases[document_id] = {
                h: data for h, data in bases.items() if h in keep
            }
            self._records[document_id] = merged
        return new_records

    def remove(self, document_id: str) -> None:
        with self._locks.hold(document_id):
            self._records.pop(document_id, None)
            self._bases.pop(document_id, None)
            self._conflicts.pop(document_id, None)

    def document_ids(self) -> list[str]:
        return sorted(set(self._records) | set(self._conflicts))

    def load_base(
        self, document_id: str, fingerprint: Fingerprint
    ) -> bytes | None:
        return self._bases.get(document_id, {}).get(fingerprint.content_hash)

    def save_conflict(self, conflict: ConflictRecord) -> None:
        with self._locks.hold(conflict.document_id):
            self._conflicts[conflict.document_id] = conflict

    def get_conflict(self, document_id: str) -> ConflictRecord | None:
        return self._conflicts.get(document_id)

    def list_conflicts(self) -> list[ConflictRecord]:
        return [self._conflicts[k] for k in sorted(self._conflicts)]

    def clear_conflict(self, document_id: str) -> bool:
        with self._locks.hold(document_id):
            return self._conflicts.pop(document_id, None) is not None
