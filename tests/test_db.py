"""Tests for recordstore.db: asyncpg connection pool and DB provisioning."""

from __future__ import annotations

import uuid

import asyncpg
import pytest
from conftest import requires_docker

from recordstore.config import DatabaseConfig
from recordstore.db import (
    ConnectionParams,
    Database,
    parse_ssl_mode,
    schema_search_path,
    should_retry_with_ssl_disable,
)
from recordstore.repository import PostgresRepository


# ---------------------------------------------------------------------------
# Environment and config parsing
# ---------------------------------------------------------------------------


@pytest.fixture
def clean_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    for var in (
        "DATABASE_URL",
        "POSTGRES_HOST",
        "POSTGRES_PORT",
        "POSTGRES_USER",
        "POSTGRES_PASSWORD",
        "POSTGRES_SSLMODE",
    ):
        monkeypatch.delenv(var, raising=False)
    return monkeypatch


@pytest.mark.unit
def test_params_from_database_url(clean_env):
    clean_env.setenv("DATABASE_URL", "postgres://alice:pw@db.example:6000/x?sslmode=require")

    assert ConnectionParams.from_env() == ConnectionParams(
        host="db.example", port=6000, user="alice", password="pw", ssl="require"
    )


@pytest.mark.unit
def test_params_from_postgres_vars(clean_env):
    clean_env.setenv("POSTGRES_HOST", "pg")
    clean_env.setenv("POSTGRES_PORT", "5433")
    clean_env.setenv("POSTGRES_SSLMODE", "bogus")

    params = ConnectionParams.from_env()

    assert (params.host, params.port, params.user, params.ssl) == ("pg", 5433, "postgres", None)


@pytest.mark.unit
def test_connect_kwargs_only_carry_explicit_ssl():
    assert "ssl" not in ConnectionParams().connect_kwargs("records")
    assert ConnectionParams(ssl="require").connect_kwargs("records") == {
        "host": "localhost",
        "port": 5432,
        "user": "postgres",
        "password": "postgres",
        "database": "records",
        "ssl": "require",
    }


@pytest.mark.unit
@pytest.mark.parametrize(
    ("value", "expected"),
    [(None, None), ("", None), (" Require ", "require"), ("sometimes", None)],
)
def test_parse_ssl_mode(value, expected):
    assert parse_ssl_mode(value) == expected


@pytest.mark.unit
def test_from_env(clean_env):
    clean_env.setenv("DATABASE_URL", "postgres://u:p@h:1234/ignored")

    db = Database.from_env("records")

    assert db.db_name == "records"
    assert db.params == ConnectionParams(host="h", port=1234, user="u", password="p")


@pytest.mark.unit
def test_from_config():
    config = DatabaseConfig(
        name="blog", schema="app", host="h", port=1, user="u", password="p", ssl="disable"
    )

    db = Database.from_config(config)

    assert db.db_name == "blog"
    assert db.schema == "app"
    assert db.params.ssl == "disable"
    assert db._server_settings() == {"search_path": "app,public"}


@pytest.mark.unit
@pytest.mark.parametrize(
    ("schema", "expected"),
    [(None, None), ("  ", None), ("public", "public"), ("app", "app,public")],
)
def test_schema_search_path(schema, expected):
    assert schema_search_path(schema) == expected


@pytest.mark.unit
@pytest.mark.parametrize("schema", ["a;b", "a-b", "2app"])
def test_invalid_schema_name(schema):
    with pytest.raises(ValueError, match="Invalid schema name"):
        Database("x", schema=schema)
    with pytest.raises(ValueError, match="Invalid schema name"):
        PostgresRepository(None, schema=schema)


@pytest.mark.unit
def test_should_retry_with_ssl_disable():
    lost = ConnectionError("unexpected connection_lost() call")

    assert should_retry_with_ssl_disable(lost, None) is True
    assert should_retry_with_ssl_disable(lost, "require") is False
    assert should_retry_with_ssl_disable(ConnectionError("refused"), None) is False


@pytest.mark.unit
async def test_close_before_connect_is_noop():
    db = Database("records")

    await db.close()

    assert db.pool is None


# ---------------------------------------------------------------------------
# Provisioning against a real server
# ---------------------------------------------------------------------------


@pytest.fixture
def db_factory(postgres_container):
    """Factory that creates Database instances wired to the test container."""

    def _make(db_name: str | None = None) -> Database:
        return Database(
            db_name=db_name or f"test_{uuid.uuid4().hex[:12]}",
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=1,
            max_pool_size=2,
        )

    return _make


@requires_docker
@pytest.mark.integration
async def test_provision_is_idempotent_and_connect_works(db_factory):
    db = db_factory()

    await db.provision()
    await db.provision()
    pool = await db.connect()
    try:
        assert db.pool is pool
        assert await pool.fetchval("SELECT current_database()") == db.db_name
    finally:
        await db.close()

    assert db.pool is None


@requires_docker
@pytest.mark.integration
async def test_connect_to_missing_database_fails(db_factory):
    db = db_factory()

    with pytest.raises(asyncpg.InvalidCatalogNameError):
        await db.connect()
