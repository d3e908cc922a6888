"""Record repositories: key-addressed CRUD with transactions, no concurrency semantics.

The stores in :mod:`recordstore.core` consume the abstract contract defined
here. :class:`PostgresRepository` implements it over an asyncpg pool;
:mod:`recordstore.memory` provides an in-process implementation.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod

import asyncpg

from recordstore.errors import SerializationFailure, StorageError
from recordstore.models import Record

logger = logging.getLogger(__name__)

DEFAULT_ISOLATION = "serializable"
ISOLATION_LEVELS = ("serializable", "repeatable_read", "read_committed")
_IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Engine errors meaning "a concurrent transaction won"; SQLSTATE 40001 / 40P01
_SERIALIZATION_ERRORS = (
    asyncpg.exceptions.SerializationError,
    asyncpg.exceptions.DeadlockDetectedError,
)


def validate_identifier(value: str, what: str = "table name") -> str:
    """Return *value* if it is a plain SQL identifier, else raise ValueError."""
    if _IDENTIFIER_PATTERN.fullmatch(value) is None:
        raise ValueError(f"Invalid {what}: {value!r}. Expected a SQL identifier-style string.")
    return value


def affected_rows(status: str) -> int:
    """Extract the row count from an asyncpg command status (``"UPDATE 1"``)."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        raise StorageError(f"Unexpected command status: {status!r}") from None


class RecordTransaction(ABC):
    """An open transaction against a repository.

    Exactly one of :meth:`commit` or :meth:`rollback` ends it; calling either
    on a finished transaction raises :class:`StorageError`. The one exception
    is :meth:`rollback` after a failed :meth:`commit`, which is a no-op.
    """

    @abstractmethod
    async def find_by_key(self, key: str) -> Record | None:
        """Read the row for *key* under the transaction's isolation."""

    @abstractmethod
    async def update(self, record: Record) -> int:
        """Overwrite the row at ``record.key``; return affected row count."""

    @abstractmethod
    async def commit(self) -> None:
        """Commit the transaction."""

    @abstractmethod
    async def rollback(self) -> None:
        """Roll the transaction back."""


class RecordRepository(ABC):
    """Raw key-addressed storage for records.

    ``versioned`` tells whether the underlying table carries a version
    column; ``name`` labels the repository in logs and metrics. Write
    methods report how many rows they affected and leave judging that count
    to the caller.
    """

    name: str
    versioned: bool

    @abstractmethod
    async def find_by_key(self, key: str) -> Record | None:
        """Return the record for *key*, or ``None`` if it does not exist."""

    @abstractmethod
    async def insert(self, record: Record) -> int:
        """Insert *record* as a new row.

        The error raised for an existing key is backend-specific:
        ``MemoryRepository`` raises ``StorageError`` while ``PostgresRepository``
        lets ``asyncpg.UniqueViolationError`` propagate unchanged.
        """

    @abstractmethod
    async def update(self, record: Record) -> int:
        """Overwrite title, content (and version when versioned) at ``record.key``."""

    @abstractmethod
    async def delete(self, key: str) -> int:
        """Delete the row at *key*."""

    @abstractmethod
    async def scan(self) -> list[Record]:
        """Return every stored record in storage order."""

    @abstractmethod
    async def begin(self, isolation: str = DEFAULT_ISOLATION) -> RecordTransaction:
        """Open a transaction with the requested isolation level."""

    @abstractmethod
    async def migrate(self) -> None:
        """Drop and recreate the records table. Destroys all data."""

    @abstractmethod
    async def ensure_schema(self) -> None:
        """Create the records table if it does not exist yet."""


# ------------------------------------------------------------------
# PostgreSQL
# ------------------------------------------------------------------


class _PostgresStatements:
    """SQL text for one records table, built once per repository."""

    def __init__(self, table: str, versioned: bool, schema: str | None) -> None:
        qualified = f'"{table}"' if schema is None else f'"{schema}"."{table}"'
        columns = "key, title, content, version" if versioned else "key, title, content"
        version_ddl = ",\n    version TEXT NOT NULL DEFAULT ''" if versioned else ""

        self.schema = schema
        self.create = (
            f"CREATE TABLE IF NOT EXISTS {qualified} (\n"
            "    key TEXT NOT NULL PRIMARY KEY,\n"
            "    title TEXT NOT NULL,\n"
            f"    content TEXT NOT NULL{version_ddl}\n"
            ")"
        )
        self.drop = f"DROP TABLE IF EXISTS {qualified}"
        self.select_one = f"SELECT {columns} FROM {qualified} WHERE key = $1"
        self.select_all = f"SELECT {columns} FROM {qualified}"
        self.delete = f"DELETE FROM {qualified} WHERE key = $1"
        if versioned:
            self.insert = (
                f"INSERT INTO {qualified} (key, title, content, version) VALUES ($1, $2, $3, $4)"
            )
            self.update = (
                f"UPDATE {qualified} SET title = $2, content = $3, version = $4 WHERE key = $1"
            )
        else:
            self.insert = f"INSERT INTO {qualified} (key, title, content) VALUES ($1, $2, $3)"
            self.update = f"UPDATE {qualified} SET title = $2, content = $3 WHERE key = $1"


def _row_to_record(row: asyncpg.Record) -> Record:
    return Record(
        key=row["key"],
        title=row["title"],
        content=row["content"],
        version=row.get("version", ""),
    )


def _write_args(record: Record, versioned: bool) -> tuple[str, ...]:
    if versioned:
        return (record.key, record.title, record.content, record.version)
    return (record.key, record.title, record.content)


class PostgresTransaction(RecordTransaction):
    """A transaction pinned to one pooled connection.

    The connection goes back to the pool when the transaction ends, whether
    by commit or rollback.
    """

    def __init__(
        self,
        pool: asyncpg.Pool,
        conn: asyncpg.Connection,
        transaction: asyncpg.transaction.Transaction,
        statements: _PostgresStatements,
        versioned: bool,
    ) -> None:
        self._pool = pool
        self._conn = conn
        self._transaction = transaction
        self._sql = statements
        self._versioned = versioned
        self._state = "open"

    def _require_open(self) -> asyncpg.Connection:
        if self._state != "open":
            raise StorageError(f"Transaction already {self._state}")
        return self._conn

    async def find_by_key(self, key: str) -> Record | None:
        conn = self._require_open()
        try:
            row = await conn.fetchrow(self._sql.select_one, key)
        except _SERIALIZATION_ERRORS as exc:
            raise SerializationFailure(str(exc)) from exc
        return None if row is None else _row_to_record(row)

    async def update(self, record: Record) -> int:
        conn = self._require_open()
        try:
            status = await conn.execute(self._sql.update, *_write_args(record, self._versioned))
        except _SERIALIZATION_ERRORS as exc:
            raise SerializationFailure(str(exc)) from exc
        return affected_rows(status)

    async def commit(self) -> None:
        self._require_open()
        try:
            await self._transaction.commit()
        except _SERIALIZATION_ERRORS as exc:
            await self._release("failed")
            raise SerializationFailure(str(exc)) from exc
        except BaseException:
            await self._release("failed")
            raise
        await self._release("committed")

    async def rollback(self) -> None:
        # The server already ended a transaction whose COMMIT failed
        if self._state == "failed":
            return
        self._require_open()
        try:
            await self._transaction.rollback()
        finally:
            await self._release("rolled back")

    async def _release(self, state: str) -> None:
        self._state = state
        await self._pool.release(self._conn)


class PostgresRepository(RecordRepository):
    """Records table in PostgreSQL, accessed through an asyncpg pool."""

    def __init__(
        self,
        pool: asyncpg.Pool,
        table: str = "records",
        *,
        versioned: bool = True,
        schema: str | None = None,
    ) -> None:
        self.pool = pool
        self.table = validate_identifier(table)
        self.name = self.table
        self.schema = None if schema is None else validate_identifier(schema, "schema name")
        self.versioned = versioned
        self._sql = _PostgresStatements(self.table, versioned, self.schema)

    async def find_by_key(self, key: str) -> Record | None:
        row = await self.pool.fetchrow(self._sql.select_one, key)
        return None if row is None else _row_to_record(row)

    async def insert(self, record: Record) -> int:
        status = await self.pool.execute(self._sql.insert, *_write_args(record, self.versioned))
        return affected_rows(status)

    async def update(self, record: Record) -> int:
        status = await self.pool.execute(self._sql.update, *_write_args(record, self.versioned))
        return affected_rows(status)

    async def delete(self, key: str) -> int:
        status = await self.pool.execute(self._sql.delete, key)
        return affected_rows(status)

    async def scan(self) -> list[Record]:
        rows = await self.pool.fetch(self._sql.select_all)
        return [_row_to_record(row) for row in rows]

    async def begin(self, isolation: str = DEFAULT_ISOLATION) -> PostgresTransaction:
        if isolation not in ISOLATION_LEVELS:
            raise ValueError(f"Unsupported isolation level: {isolation!r}")
        conn = await self.pool.acquire()
        try:
            transaction = conn.transaction(isolation=isolation)
            await transaction.start()
        except BaseException:
            await self.pool.release(conn)
            raise
        return PostgresTransaction(self.pool, conn, transaction, self._sql, self.versioned)

    async def migrate(self) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if self._sql.schema is not None:
                    await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{self._sql.schema}"')
                await conn.execute(self._sql.drop)
                await conn.execute(self._sql.create)
        logger.info("Recreated table %s (versioned=%s)", self.table, self.versioned)

    async def ensure_schema(self) -> None:
        async with self.pool.acquire() as conn:
            if self._sql.schema is not None:
                await conn.execute(f'CREATE SCHEMA IF NOT EXISTS "{self._sql.schema}"')
            await conn.execute(self._sql.create)
