"""Host-facing replica interfaces.

The engine never does vault I/O on its own: the host plugin hands it a
``LocalVault`` for the device's own vault and a ``RemoteReplica`` for the
other side (another device, a server, a synced folder).  Both are plain
``Protocol`` classes so any object with the right methods qualifies.

``apply()`` and ``delete()`` must be durable before they return; the
coordinator commits Version Store records only after they do.

Two reference implementations are provided:

* ``MemoryReplica`` -- dict-backed, for tests and in-process hosts.
* ``DirectoryReplica`` -- a vault directory on disk, with exclude globs and
  atomic fsynced writes.
"""

from __future__ import annotations

import fnmatch
import logging
import threading
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Protocol, runtime_checkable

from vault_sync.file_handler import atomic_write, remove_file, resolve_document_path
from vault_sync.sync.fingerprint import fingerprint
from vault_sync.sync.models import Fingerprint, ListingEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class LocalVault(Protocol):
    """The device's own vault."""

    def read(self, document_id: str) -> bytes | None:
        """Return the document bytes, or ``None`` if it does not exist."""
        ...  # pragma: no cover

    def apply(self, document_id: str, content: bytes) -> None:
        """Durably write *content* as the new document state."""
        ...  # pragma: no cover

    def delete(self, document_id: str) -> None:
        """Durably delete the document (no error if already absent)."""
        ...  # pragma: no cover


@runtime_checkable
class RemoteReplica(Protocol):
    """Transport-agnostic access to the other replica."""

    def fingerprint(self, document_id: str) -> Fingerprint | None:
        """Return the current fingerprint, or ``None`` if absent."""
        ...  # pragma: no cover

    def fetch(self, document_id: str) -> bytes | None:
        """Return the current bytes, or ``None`` if absent."""
        ...  # pragma: no cover

    def apply(self, document_id: str, content: bytes) -> None:
        """Durably write *content* on the replica."""
        ...  # pragma: no cover

    def delete(self, document_id: str) -> None:
        """Durably delete the document on the replica."""
        ...  # pragma: no cover


def listing_ids(listing: Iterable[str | ListingEntry] | None) -> set[str]:
    """Normalize a host listing to a set of document IDs."""
    if listing is None:
        return set()
    ids: set[str] = set()
    for item in listing:
        ids.add(item.document_id if isinstance(item, ListingEntry) else str(item))
    return ids


def is_excluded(document_id: str, patterns: Iterable[str]) -> bool:
    """Return ``True`` if *document_id* matches any exclude glob."""
    return any(fnmatch.fnmatchcase(document_id, pattern) for pattern in patterns)


# ---------------------------------------------------------------------------
# In-memory replica
# ---------------------------------------------------------------------------


class MemoryReplica:
    """Dict-backed replica usable as both ``LocalVault`` and ``RemoteReplica``.

    Args:
        documents: Initial contents keyed by document ID.
    """

    def __init__(self, documents: Mapping[str, bytes] | None = None) -> None:
        self._documents: dict[str, bytes] = dict(documents or {})
        self._lock = threading.Lock()
        self.writes: list[str] = []
        self.deletes: list[str] = []

    @property
    def documents(self) -> dict[str, bytes]:
        """Snapshot of the current contents."""
        with self._lock:
            return dict(self._documents)

    def listing(self) -> list[ListingEntry]:
        with self._lock:
            return [
                ListingEntry(document_id=doc_id, size=len(data))
                for doc_id, data in sorted(self._documents.items())
            ]

    def read(self, document_id: str) -> bytes | None:
        with self._lock:
            return self._documents.get(document_id)

    fetch = read

    def fingerprint(self, document_id: str) -> Fingerprint | None:
        content = self.read(document_id)
        if content is None:
            return None
        return fingerprint(content, document_id=document_id)

    def apply(self, document_id: str, content: bytes) -> None:
        with self._lock:
            self._documents[document_id] = bytes(content)
            self.writes.append(document_id)

    def delete(self, document_id: str) -> None:
        with self._lock:
            self._documents.pop(document_id, None)
            self.deletes.append(document_id)


# ---------------------------------------------------------------------------
# Directory replica
# ---------------------------------------------------------------------------


class DirectoryReplica:
    """A vault directory on the local filesystem.

    Usable as both ``LocalVault`` and ``RemoteReplica``.

    Args:
        root: Vault root directory.
        exclude: Glob patterns (matched against document IDs) to ignore.
        max_document_bytes: Optional size limit for fingerprinting.
    """

    def __init__(
        self,
        root: Path,
        exclude: Iterable[str] = (),
        max_document_bytes: int | None = None,
    ) -> None:
        self.root = Path(root)
        self.exclude = tuple(exclude)
        self.max_document_bytes = max_document_bytes

    def listing(self) -> list[ListingEntry]:
        """Enumerate documents under the root, skipping excluded paths."""
        entries: list[ListingEntry] = []
        if not self.root.exists():
            return entries
        for path in sorted(self.root.rglob("*")):
            if not path.is_file():
                continue
            document_id = path.relative_to(self.root).as_posix()
            if is_excluded(document_id, self.exclude):
                continue
            # Leftovers of interrupted atomic writes.
            if path.name.startswith(".") and path.name.endswith(".tmp"):
                continue
            stat = path.stat()
            entries.append(
                ListingEntry(
                    document_id=document_id,
                    size=stat.st_size,
                    mtime=stat.st_mtime,
                )
            )
        return entries

    def read(self, document_id: str) -> bytes | None:
        path = resolve_document_path(self.root, document_id)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None

    fetch = read

    def fingerprint(self, document_id: str) -> Fingerprint | None:
        content = self.read(document_id)
        if content is None:
            return None
        return fingerprint(
            content, max_bytes=self.max_document_bytes, document_id=document_id
        )

    def apply(self, document_id: str, content: bytes) -> None:
        path = resolve_document_path(self.root, document_id)
        written = atomic_write(path, content)
        logger.debug("Wrote %d bytes to %s", written, path)

    def delete(self, document_id: str) -> None:
        path = resolve_document_path(self.root, document_id)
        if remove_file(path):
            logger.debug("Deleted %s", path)
