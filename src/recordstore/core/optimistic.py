"""Record store with optimistic concurrency control.

Every persisted record carries an opaque version token. A save of an existing
record only goes through if the caller's version is still the stored one:
inside a serializable transaction the store re-reads the row, compares
versions, then writes the new content under a freshly minted token. A stale
version aborts the transaction with :class:`~recordstore.errors.ConflictError`.

The read and the write must share one serializable transaction. Under READ
COMMITTED two writers can both read the same version, both pass the check,
and both update, which is exactly the lost update this store exists to
prevent.

Conflicts are reported, never retried. Callers decide whether to re-fetch,
merge, and save again.
"""

from __future__ import annotations

import logging
import time

from opentelemetry import trace

from recordstore.core.last_write_wins import LastWriteWinsStore, assert_affected
from recordstore.core.metrics import (
    OUTCOME_CONFLICT,
    OUTCOME_ERROR,
    OUTCOME_INSERTED,
    OUTCOME_UPDATED,
    StoreMetrics,
)
from recordstore.errors import ConflictError, NotFoundError, SerializationFailure
from recordstore.models import Record, new_token
from recordstore.repository import RecordRepository, RecordTransaction

logger = logging.getLogger(__name__)

_tracer = trace.get_tracer(__name__)

SERIALIZABLE = "serializable"


class OptimisticStore:
    """Version-checked record store.

    Holds a :class:`LastWriteWinsStore` over the same repository and hands
    ``find``, ``delete``, ``list``, ``migrate`` and ``ensure_schema`` to it
    unchanged. Only :meth:`save` differs.

    The store keeps no state between calls; any number of tasks may share
    one instance.
    """

    def __init__(
        self,
        repository: RecordRepository,
        *,
        metrics: StoreMetrics | None = None,
    ) -> None:
        if not repository.versioned:
            raise ValueError(
                f"OptimisticStore needs a versioned repository; {repository.name!r} is not"
            )
        self.repository = repository
        self._baseline = LastWriteWinsStore(repository)
        self._metrics = metrics or StoreMetrics(repository.name)

    async def find(self, key: str) -> Record:
        return await self._baseline.find(key)

    async def delete(self, key: str) -> bool:
        return await self._baseline.delete(key)

    async def list(self) -> list[Record]:
        return await self._baseline.list()

    async def migrate(self) -> None:
        await self._baseline.migrate()

    async def ensure_schema(self) -> None:
        await self._baseline.ensure_schema()

    async def save(self, record: Record) -> None:
        """Insert *record*, or update it if its version is still current.

        On success the record's ``key`` (for new records) and ``version`` are
        updated in place. On failure the record is left as the caller passed
        it, so ``record.version`` still names the snapshot the caller saw.

        Raises:
            ConflictError: The stored version differs from ``record.version``.
            NotFoundError: The record has a key but no stored row.
            ConsistencyError: The write did not affect exactly one row.
        """
        started = time.monotonic()
        outcome = OUTCOME_ERROR
        with _tracer.start_as_current_span("recordstore.save") as span:
            span.set_attribute("recordstore.table", self.repository.name)
            try:
                if record.is_new:
                    await self._insert(record)
                    outcome = OUTCOME_INSERTED
                else:
                    await self._update(record)
                    outcome = OUTCOME_UPDATED
            except ConflictError:
                outcome = OUTCOME_CONFLICT
                raise
            finally:
                span.set_attribute("record.key", record.key)
                span.set_attribute("recordstore.outcome", outcome)
                self._metrics.record_save(outcome, (time.monotonic() - started) * 1000)

    async def _insert(self, record: Record) -> None:
        previous_version = record.version
        record.version = new_token()
        try:
            await self._baseline.save(record)
        except BaseException:
            record.version = previous_version
            raise

    async def _update(self, record: Record) -> None:
        try:
            staged = await self._compare_and_swap(record)
        except SerializationFailure as exc:
            # A concurrent writer committed first; report it as the conflict it is
            logger.warning("Serialization failure saving record %s: %s", record.key, exc)
            stored_version = await self._stored_version(record.key)
            if stored_version is not None and stored_version != record.version:
                raise ConflictError(record.key, record.version, stored_version) from exc
            raise

        record.version = staged.version
        logger.debug("Updated record %s to version %s", record.key, record.version)

    async def _compare_and_swap(self, record: Record) -> Record:
        """Run the read-compare-write for *record*; return the row as written.

        The transaction is rolled back on every exit that did not commit,
        cancellation included.
        """
        tx = await self.repository.begin(isolation=SERIALIZABLE)
        committed = False
        try:
            current = await tx.find_by_key(record.key)
            if current is None:
                raise NotFoundError(record.key)

            if current.version != record.version:
                logger.info(
                    "Version conflict on record %s: caller=%s stored=%s",
                    record.key,
                    record.version,
                    current.version,
                )
                raise ConflictError(record.key, record.version, current.version)

            staged = record.copy()
            staged.version = new_token()
            assert_affected("update", await tx.update(staged))
            await tx.commit()
            committed = True
        finally:
            if not committed:
                await self._rollback(tx, record.key)
        return staged

    async def _rollback(self, tx: RecordTransaction, key: str) -> None:
        """Roll *tx* back; a failure here is logged so the original error wins."""
        try:
            await tx.rollback()
        except Exception:
            logger.exception("Failed to roll back transaction for record %s", key)

    async def _stored_version(self, key: str) -> str | None:
        try:
            current = await self.repository.find_by_key(key)
        except Exception:
            logger.exception("Failed to re-read record %s after serialization failure", key)
            return None
        return None if current is None else current.version
