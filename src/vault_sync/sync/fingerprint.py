"""Fingerprint engine.

``fingerprint()`` is a pure function from document bytes to a
``Fingerprint``:

* ``content_hash`` -- SHA-256 of the raw bytes.  Change detection compares
  this field only, so unchanged content is never re-transmitted or
  re-merged.
* ``structure_hash`` -- SHA-256 of the block outline (block kinds and
  heading levels in order).  Editing text inside a paragraph keeps it;
  adding, removing or moving structural blocks changes it.

Content that is not valid UTF-8 (attachments, images) gets a constant
"opaque" outline so it can still be fingerprinted and fast-forwarded.
"""

from __future__ import annotations

import hashlib

from vault_sync.exceptions import FingerprintFailure
from vault_sync.sync.blocks import outline, parse_blocks
from vault_sync.sync.models import Fingerprint

_OPAQUE_OUTLINE = "opaque"


def fingerprint(
    content: bytes,
    max_bytes: int | None = None,
    document_id: str | None = None,
) -> Fingerprint:
    """Compute the fingerprint of *content*.

    Args:
        content: Raw document bytes.  Empty content is valid.
        max_bytes: Optional size limit; larger content is rejected rather
            than truncated.
        document_id: Used in error messages only.

    Returns:
        The document ``Fingerprint``.

    Raises:
        FingerprintFailure: If *content* is not bytes, exceeds *max_bytes*,
            or hashing runs out of memory.
    """
    if not isinstance(content, (bytes, bytearray, memoryview)):
        raise FingerprintFailure(
            f"Expected bytes, got {type(content).__name__}",
            document_id=document_id,
        )
    data = bytes(content)
    if max_bytes is not None and len(data) > max_bytes:
        raise FingerprintFailure(
            f"Content is {len(data)} bytes, limit is {max_bytes}",
            document_id=document_id,
        )

    try:
        content_hash = hashlib.sha256(data).hexdigest()
        structure_hash = structural_digest(data)
    except MemoryError as exc:
        raise FingerprintFailure(
            f"Out of memory while fingerprinting {len(data)} bytes",
            document_id=document_id,
        ) from exc

    return Fingerprint(
        content_hash=content_hash,
        structure_hash=structure_hash,
        size=len(data),
    )


def structural_digest(content: bytes) -> str:
    """SHA-256 hex digest over the block outline of *content*."""
    try:
        text = content.decode("utf-8")
    except UnicodeDecodeError:
        shape = _OPAQUE_OUTLINE
    else:
        shape = "\n".join(outline(parse_blocks(text)))
    return hashlib.sha256(shape.encode("utf-8")).hexdigest()
