"""Database provisioning and connection pool management for record stores."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import parse_qs, urlparse

import asyncpg

from recordstore.repository import validate_identifier

if TYPE_CHECKING:
    from recordstore.config import DatabaseConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")

SSL_MODES = frozenset({"disable", "prefer", "allow", "require", "verify-ca", "verify-full"})
MAINTENANCE_DB = "postgres"

# asyncpg's message when a server drops the connection during the STARTTLS probe
_SSL_UPGRADE_LOST = "unexpected connection_lost() call"


def parse_ssl_mode(value: str | None) -> str | None:
    """Return *value* as an asyncpg ssl mode, or None when blank or unknown."""
    mode = (value or "").strip().lower()
    if not mode:
        return None
    if mode not in SSL_MODES:
        logger.warning("Ignoring invalid PostgreSQL sslmode value: %s", value)
        return None
    return mode


def _validated_schema(value: str | None) -> str | None:
    schema = (value or "").strip()
    if not schema:
        return None
    return validate_identifier(schema, "schema name")


def schema_search_path(schema: str | None) -> str | None:
    """search_path for connections of a store living in *schema*.

    ``public`` stays on the path so extensions installed there still resolve.
    """
    schema = _validated_schema(schema)
    if schema is None or schema == "public":
        return schema
    return f"{schema},public"


def should_retry_with_ssl_disable(exc: Exception, configured_ssl: str | None) -> bool:
    """True when the SSL upgrade was lost and no ssl mode was asked for explicitly."""
    if configured_ssl is not None or not isinstance(exc, ConnectionError):
        return False
    return _SSL_UPGRADE_LOST in str(exc)


@dataclass(frozen=True)
class ConnectionParams:
    """Server coordinates shared by the maintenance connection and the pool."""

    host: str = "localhost"
    port: int = 5432
    user: str = "postgres"
    password: str = "postgres"
    ssl: str | None = None

    @classmethod
    def from_url(cls, url: str) -> ConnectionParams:
        """Parse a libpq-style ``postgres://`` URL; the database path is ignored."""
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        return cls(
            host=parsed.hostname or "localhost",
            port=parsed.port or 5432,
            user=parsed.username or "postgres",
            password=parsed.password or "postgres",
            ssl=parse_ssl_mode(query.get("sslmode", [None])[0]),
        )

    @classmethod
    def from_env(cls) -> ConnectionParams:
        """Read ``DATABASE_URL``, falling back to the ``POSTGRES_*`` variables."""
        url = os.environ.get("DATABASE_URL")
        if url:
            return cls.from_url(url)
        return cls(
            host=os.environ.get("POSTGRES_HOST", "localhost"),
            port=int(os.environ.get("POSTGRES_PORT", "5432")),
            user=os.environ.get("POSTGRES_USER", "postgres"),
            password=os.environ.get("POSTGRES_PASSWORD", "postgres"),
            ssl=parse_ssl_mode(os.environ.get("POSTGRES_SSLMODE")),
        )

    def connect_kwargs(self, database: str) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "host": self.host,
            "port": self.port,
            "user": self.user,
            "password": self.password,
            "database": database,
        }
        if self.ssl is not None:
            kwargs["ssl"] = self.ssl
        return kwargs


async def _open_with_ssl_fallback(
    opener: Callable[..., Awaitable[T]],
    kwargs: dict[str, Any],
    configured_ssl: str | None,
    what: str,
) -> T:
    try:
        return await opener(**kwargs)
    except Exception as exc:
        if not should_retry_with_ssl_disable(exc, configured_ssl):
            raise
        logger.info("Retrying PostgreSQL %s with ssl=disable after SSL upgrade loss", what)
        return await opener(**{**kwargs, "ssl": "disable"})


class Database:
    """The database a record store lives in, and its asyncpg pool.

    ``provision()`` creates the database when missing. ``connect()`` opens the
    pool repositories borrow connections from; when *schema* is set, pooled
    connections resolve unqualified names in that schema first.
    """

    def __init__(
        self,
        db_name: str,
        schema: str | None = None,
        host: str = "localhost",
        port: int = 5432,
        user: str = "postgres",
        password: str = "postgres",
        ssl: str | None = None,
        min_pool_size: int = 2,
        max_pool_size: int = 10,
    ) -> None:
        self.db_name = db_name
        self.schema = _validated_schema(schema)
        self.params = ConnectionParams(host, port, user, password, ssl)
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    def _server_settings(self) -> dict[str, str] | None:
        search_path = schema_search_path(self.schema)
        return None if search_path is None else {"search_path": search_path}

    async def provision(self) -> None:
        """Create the database if it doesn't exist.

        Runs against the ``postgres`` maintenance database, since the target
        may not exist yet.
        """
        conn = await _open_with_ssl_fallback(
            asyncpg.connect,
            self.params.connect_kwargs(MAINTENANCE_DB),
            self.params.ssl,
            "provision connection",
        )
        try:
            exists = await conn.fetchval(
                "SELECT 1 FROM pg_database WHERE datname = $1", self.db_name
            )
            if exists:
                logger.info("Database already exists: %s", self.db_name)
                return
            # CREATE DATABASE takes no bind parameters
            quoted = self.db_name.replace('"', '""')
            await conn.execute(f'CREATE DATABASE "{quoted}" TEMPLATE template0')
            logger.info("Created database: %s", self.db_name)
        finally:
            await conn.close()

    async def connect(self) -> asyncpg.Pool:
        """Open the connection pool and return it."""
        kwargs = self.params.connect_kwargs(self.db_name)
        kwargs.update(min_size=self.min_pool_size, max_size=self.max_pool_size)
        server_settings = self._server_settings()
        if server_settings is not None:
            kwargs["server_settings"] = server_settings
        self.pool = await _open_with_ssl_fallback(
            asyncpg.create_pool, kwargs, self.params.ssl, "pool creation"
        )
        logger.info(
            "Connection pool created for %s (size %d-%d)",
            self.db_name,
            self.min_pool_size,
            self.max_pool_size,
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        await pool.close()
        logger.info("Connection pool closed for: %s", self.db_name)

    @classmethod
    def from_env(cls, db_name: str) -> Database:
        """Build a Database for *db_name* from ``DATABASE_URL`` or ``POSTGRES_*``."""
        params = ConnectionParams.from_env()
        return cls(db_name, None, params.host, params.port, params.user, params.password, params.ssl)

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> Database:
        """Build a Database from a parsed ``[store.db]`` section."""
        return cls(
            db_name=config.name,
            schema=config.schema,
            host=config.host,
            port=config.port,
            user=config.user,
            password=config.password,
            ssl=config.ssl,
            min_pool_size=config.min_pool_size,
            max_pool_size=config.max_pool_size,
        )
