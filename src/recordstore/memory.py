"""In-process record repository.

Rows live in a dict owned by the repository instance. Transactions take an
``asyncio.Lock`` at :meth:`MemoryRepository.begin` and hold it until they
commit or roll back, so transactions run one at a time and are trivially
serializable. Writes made inside a transaction are buffered and only become
visible on commit.

Every operation yields to the event loop once before touching the rows, so
concurrent callers interleave the way they would against a real database.
"""

from __future__ import annotations

import asyncio
import logging

from recordstore.errors import StorageError
from recordstore.models import Record
from recordstore.repository import (
    DEFAULT_ISOLATION,
    ISOLATION_LEVELS,
    RecordRepository,
    RecordTransaction,
)

logger = logging.getLogger(__name__)


class MemoryTransaction(RecordTransaction):
    """A transaction over a :class:`MemoryRepository`; holds the write lock."""

    def __init__(self, repository: MemoryRepository) -> None:
        self._repository = repository
        self._pending: dict[str, Record] = {}
        self._state = "open"

    def _require_open(self) -> None:
        if self._state != "open":
            raise StorageError(f"Transaction already {self._state}")

    async def find_by_key(self, key: str) -> Record | None:
        self._require_open()
        await asyncio.sleep(0)
        row = self._pending.get(key) or self._repository.rows.get(key)
        return None if row is None else row.copy()

    async def update(self, record: Record) -> int:
        self._require_open()
        await asyncio.sleep(0)
        if record.key not in self._pending and record.key not in self._repository.rows:
            return 0
        self._pending[record.key] = self._repository._stored(record)
        return 1

    async def commit(self) -> None:
        self._require_open()
        self._repository.rows.update(self._pending)
        self._finish("committed")

    async def rollback(self) -> None:
        self._require_open()
        self._pending.clear()
        self._finish("rolled back")

    def _finish(self, state: str) -> None:
        self._state = state
        self._repository._lock.release()


class MemoryRepository(RecordRepository):
    """A memory-backed record repository.

    Non-transactional writes also take the lock, so they never land in the
    middle of an open transaction.
    """

    def __init__(self, name: str = "memory", *, versioned: bool = True) -> None:
        self.name = name
        self.versioned = versioned
        self.rows: dict[str, Record] = {}
        self._lock = asyncio.Lock()

    def _stored(self, record: Record) -> Record:
        stored = record.copy()
        if not self.versioned:
            stored.version = ""
        return stored

    async def find_by_key(self, key: str) -> Record | None:
        await asyncio.sleep(0)
        row = self.rows.get(key)
        return None if row is None else row.copy()

    async def insert(self, record: Record) -> int:
        await asyncio.sleep(0)
        async with self._lock:
            if record.key in self.rows:
                raise StorageError(f"Duplicate key {record.key!r}")
            self.rows[record.key] = self._stored(record)
        return 1

    async def update(self, record: Record) -> int:
        await asyncio.sleep(0)
        async with self._lock:
            if record.key not in self.rows:
                return 0
            self.rows[record.key] = self._stored(record)
        return 1

    async def delete(self, key: str) -> int:
        await asyncio.sleep(0)
        async with self._lock:
            return 0 if self.rows.pop(key, None) is None else 1

    async def scan(self) -> list[Record]:
        await asyncio.sleep(0)
        return [row.copy() for row in self.rows.values()]

    async def begin(self, isolation: str = DEFAULT_ISOLATION) -> MemoryTransaction:
        if isolation not in ISOLATION_LEVELS:
            raise ValueError(f"Unsupported isolation level: {isolation!r}")
        await asyncio.sleep(0)
        await self._lock.acquire()
        return MemoryTransaction(self)

    async def migrate(self) -> None:
        async with self._lock:
            self.rows.clear()
        logger.info("Cleared in-memory records (versioned=%s)", self.versioned)

    async def ensure_schema(self) -> None:
        return None
