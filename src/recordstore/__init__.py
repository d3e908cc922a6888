"""recordstore: a record store with optimistic concurrency control."""

from .config import ConfigError, StoreConfig, load_config
from .core.last_write_wins import LastWriteWinsStore
from .core.optimistic import OptimisticStore
from .db import Database
from .errors import (
    ConflictError,
    ConsistencyError,
    NotFoundError,
    SerializationFailure,
    StorageError,
    StoreError,
)
from .memory import MemoryRepository
from .models import Record, new_token
from .repository import PostgresRepository, RecordRepository, RecordTransaction
from .store import RecordStore, open_store

__all__ = [
    "ConfigError",
    "ConflictError",
    "ConsistencyError",
    "Database",
    "LastWriteWinsStore",
    "MemoryRepository",
    "NotFoundError",
    "OptimisticStore",
    "PostgresRepository",
    "Record",
    "RecordRepository",
    "RecordStore",
    "RecordTransaction",
    "SerializationFailure",
    "StorageError",
    "StoreConfig",
    "StoreError",
    "load_config",
    "new_token",
    "open_store",
]
