"""File handler module: path validation and durable writes.

Provides the file I/O infrastructure shared by the Version Store and the
directory-backed replica.  Every write that a later commit depends on goes
through ``atomic_write()``: temp file in the same directory, ``fsync``,
``os.replace()``, then ``fsync`` of the directory, so a crash leaves
either the old or the new file and never a partial one.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path, PurePosixPath

# =============================================================================
# Path Validation
# =============================================================================


def resolve_document_path(root: Path, document_id: str) -> Path:
    """Map a vault-relative document ID to a path under *root*.

    Args:
        root: Vault root directory.
        document_id: POSIX-style relative path (e.g. ``"notes/A.md"``).

    Returns:
        Absolute path of the document.

    Raises:
        ValueError: If the ID is absolute, empty, or escapes *root*.
    """
    rel = PurePosixPath(document_id)
    if not document_id or rel.is_absolute():
        raise ValueError(f"Document ID must be a relative path: {document_id!r}")
    if any(part == ".." for part in rel.parts):
        raise ValueError(f"Document ID escapes the vault: {document_id!r}")

    root_resolved = root.resolve()
    resolved = (root_resolved / Path(*rel.parts)).resolve()
    if not resolved.is_relative_to(root_resolved):
        raise ValueError(
            f"Document path is outside the vault: {resolved} not under {root_resolved}"
        )
    return resolved


# =============================================================================
# Durable writes
# =============================================================================


def atomic_write(path: Path, data: bytes) -> int:
    """Durably replace *path* with *data*, creating parent directories.

    Args:
        path: Target file.
        data: Bytes to write.

    Returns:
        Number of bytes written.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=".", suffix=".tmp"
    )
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        # Clean up temp file on any failure.
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
    fsync_directory(path.parent)
    return len(data)


def remove_file(path: Path) -> bool:
    """Durably remove *path*.  Returns ``False`` if it did not exist."""
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    fsync_directory(path.parent)
    return True


def fsync_directory(path: Path) -> None:
    """Flush directory entries of *path* to disk where the OS allows it."""
    try:
        fd = os.open(str(path), os.O_RDONLY)
    except OSError:
        # Directories cannot be opened on some platforms (Windows).
        return
    try:
        os.fsync(fd)
    except OSError:
        # Some filesystems reject fsync on directories; the rename is
        # still atomic there.
        pass
    finally:
        os.close(fd)
