"""
Custom exceptions for the vault sync engine.

Only conditions that stop work on a document (or on a whole pass) are
exceptions.  A merge that cannot be decided automatically is not an error:
it is the ``Unresolved`` merge outcome.
"""


class VaultSyncError(Exception):
    """Base exception for all vault sync errors."""
    pass


class FingerprintFailure(VaultSyncError):
    """
    Content of a document could not be fingerprinted.

    Raised when:
    - The host could not read the document
    - The content exceeds the configured size limit
    - The process ran out of memory while hashing

    Fatal to the affected document only.
    """

    def __init__(self, message: str, document_id: str | None = None):
        super().__init__(message)
        self.document_id = document_id


class StoreCorruption(VaultSyncError):
    """
    Version Store data violates an invariant on read.

    Raised when:
    - A record or state file is not valid JSON
    - A record belongs to a different document than its key
    - A causal clock is not a positive integer
    - The store format version is unknown

    Fatal to the whole synchronization pass.
    """

    def __init__(self, message: str, path: str | None = None):
        super().__init__(message)
        self.path = path


class AmbiguousOrigin(VaultSyncError):
    """
    No common ancestor exists for two differing versions of a document.

    Recoverable: the coordinator logs it and treats the document as
    modified on both sides.
    """

    def __init__(self, document_id: str):
        super().__init__(
            f"No common ancestor recorded for '{document_id}' and both "
            f"replicas report different content"
        )
        self.document_id = document_id


class DocumentEncodingError(VaultSyncError):
    """Merge input is not decodable text.  Fatal to that document's merge."""

    def __init__(self, message: str, document_id: str | None = None):
        super().__init__(message)
        self.document_id = document_id


class ConflictNotFound(VaultSyncError):
    """No unresolved conflict is recorded for the requested document."""

    def __init__(self, document_id: str):
        super().__init__(f"No unresolved conflict for '{document_id}'")
        self.document_id = document_id


class ConfigError(VaultSyncError):
    """Configuration is missing, malformed, or out of range."""
    pass
