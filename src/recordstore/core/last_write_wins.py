"""Last-write-wins record store.

A thin pass-through over a :class:`~recordstore.repository.RecordRepository`:
updates overwrite unconditionally by key. Two concurrent updates to the same
record both succeed and whichever lands last silently discards the other.
This store is the baseline that :class:`~recordstore.core.optimistic.OptimisticStore`
is measured against; it is not a safe choice for concurrent writers.
"""

from __future__ import annotations

import logging

from recordstore.errors import ConsistencyError, NotFoundError
from recordstore.models import Record, new_token
from recordstore.repository import RecordRepository

logger = logging.getLogger(__name__)


def assert_affected(operation: str, affected: int, expected: int = 1) -> None:
    """Raise :class:`ConsistencyError` unless *affected* equals *expected*."""
    if affected != expected:
        logger.warning("%s affected %d row(s), expected %d", operation, affected, expected)
        raise ConsistencyError(operation, expected=expected, affected=affected)


class LastWriteWinsStore:
    """Record store with unconditional overwrite on update."""

    def __init__(self, repository: RecordRepository) -> None:
        self.repository = repository

    async def find(self, key: str) -> Record:
        """Return the record stored at *key*.

        Raises:
            NotFoundError: If no record exists for *key*.
        """
        record = await self.repository.find_by_key(key)
        if record is None:
            raise NotFoundError(key)
        return record

    async def save(self, record: Record) -> None:
        """Insert a new record or overwrite an existing one.

        A record without a key gets a fresh key assigned in place and is
        inserted. Otherwise its title and content (and the version it
        carries, on versioned tables) replace whatever is stored.

        Raises:
            ConsistencyError: If the write did not affect exactly one row,
                e.g. the key was deleted in the meantime.
        """
        if record.is_new:
            record.key = new_token()
            try:
                assert_affected("insert", await self.repository.insert(record))
            except BaseException:
                record.key = ""
                raise
            logger.debug("Inserted record %s", record.key)
            return

        assert_affected("update", await self.repository.update(record))
        logger.debug("Overwrote record %s", record.key)

    async def delete(self, key: str) -> bool:
        """Delete the record at *key*; return whether one was removed."""
        return await self.repository.delete(key) == 1

    async def list(self) -> list[Record]:
        """Return every stored record. Order is storage-defined."""
        return await self.repository.scan()

    async def migrate(self) -> None:
        """Drop and recreate the records table. Destroys all data."""
        await self.repository.migrate()

    async def ensure_schema(self) -> None:
        await self.repository.ensure_schema()
