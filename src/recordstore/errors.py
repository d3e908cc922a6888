"""Error types raised by the record stores and their repositories."""

from __future__ import annotations


class StoreError(Exception):
    """Base class for all record store errors."""


class NotFoundError(StoreError, LookupError):
    """Raised when no persisted record exists for *key*.

    Attributes:
        key: The key that was looked up.
    """

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f"Could not find record with key {key!r}")


class ConflictError(StoreError):
    """Raised when a save carries a version that is no longer the stored one.

    Another writer updated the record after the caller read it. The store
    never retries; the caller should re-fetch, merge, and save again.

    Attributes:
        key: The record key involved in the conflict.
        caller_version: The version the caller last observed.
        stored_version: The version currently persisted.
    """

    def __init__(self, key: str, caller_version: str, stored_version: str) -> None:
        self.key = key
        self.caller_version = caller_version
        self.stored_version = stored_version
        super().__init__(
            f"Version mismatch on record {key!r}: caller has version {caller_version!r} "
            f"but the stored version is {stored_version!r}"
        )


class ConsistencyError(StoreError):
    """Raised when a write affected a different number of rows than expected.

    Attributes:
        operation: The write that was issued (``insert``, ``update``, ...).
        expected: Number of rows the write should have affected.
        affected: Number of rows it actually affected.
    """

    def __init__(self, operation: str, expected: int, affected: int) -> None:
        self.operation = operation
        self.expected = expected
        self.affected = affected
        super().__init__(
            f"Expected {expected} row(s) to be affected by {operation} "
            f"but {affected} row(s) were affected"
        )


class StorageError(StoreError):
    """Raised by repositories for failures of the storage layer itself."""


class SerializationFailure(StorageError):
    """The storage engine refused to serialize a transaction.

    Raised when a concurrent transaction committed a conflicting write first.
    The original driver error is available as ``__cause__``.
    """
