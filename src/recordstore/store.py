"""Store protocol and factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Protocol, runtime_checkable

from recordstore.config import StoreConfig
from recordstore.core.last_write_wins import LastWriteWinsStore
from recordstore.core.logging import configure_logging, store_context
from recordstore.core.optimistic import OptimisticStore
from recordstore.db import Database
from recordstore.models import Record
from recordstore.repository import PostgresRepository

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordStore(Protocol):
    """Protocol shared by the record stores.

    Implementations: ``OptimisticStore``, ``LastWriteWinsStore``.
    """

    async def find(self, key: str) -> Record: ...
    async def save(self, record: Record) -> None: ...
    async def delete(self, key: str) -> bool: ...
    async def list(self) -> list[Record]: ...
    async def migrate(self) -> None: ...
    async def ensure_schema(self) -> None: ...


@asynccontextmanager
async def open_store(
    config: StoreConfig,
    *,
    optimistic: bool = True,
    provision: bool = False,
    setup_logging: bool = False,
) -> AsyncIterator[RecordStore]:
    """Connect to the configured database and yield a record store.

    Args:
        config: Parsed configuration, see :func:`recordstore.config.load_config`.
        optimistic: ``True`` (default) for an ``OptimisticStore``, ``False``
            for the last-write-wins baseline.
        provision: Create the database first if it does not exist.
        setup_logging: Apply the ``[store.logging]`` section to the process
            before connecting.

    The table is created if missing but never dropped. Log records emitted
    inside the context carry the table name as ``store``. The connection pool
    is closed when the context exits.
    """
    if setup_logging:
        configure_logging(
            level=config.logging.level,
            fmt=config.logging.format,
            log_root=config.logging.log_root,
            store_name=config.table,
        )

    db = Database.from_config(config.db)
    with store_context(config.table):
        if provision:
            await db.provision()
        pool = await db.connect()
        try:
            repository = PostgresRepository(
                pool,
                config.table,
                versioned=config.versioned,
                schema=config.db.schema,
            )
            store: RecordStore
            if optimistic:
                store = OptimisticStore(repository)
            else:
                store = LastWriteWinsStore(repository)
            await store.ensure_schema()
            logger.info(
                "Opened %s over %s.%s",
                type(store).__name__,
                config.db.name,
                config.table,
            )
            yield store
        finally:
            await db.close()
