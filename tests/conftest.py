"""Shared fixtures for the recordstore test suite.

Every test gets its own storage: memory repositories are created per test,
and PostgreSQL-backed tests get a freshly provisioned database inside one
shared container. Nothing is shared between tests except the container
process itself.
"""

from __future__ import annotations

import base64
import os
import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

from recordstore.memory import MemoryRepository
from recordstore.models import Record
from recordstore.repository import PostgresRepository, RecordRepository

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None

requires_docker = pytest.mark.skipif(not docker_available, reason="Docker not available")

RepositoryFactory = Callable[..., AbstractAsyncContextManager[RecordRepository]]


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


def random_text() -> str:
    return base64.b64encode(os.urandom(96)).decode()


def sample_record() -> Record:
    return Record(title=random_text(), content=random_text())


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Each test provisions its own database with a random name, so rows and
    tables never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database and asyncpg pool for a single test usage.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from recordstore.db import Database

    @asynccontextmanager
    async def _provision(
        *,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision


@pytest.fixture(
    params=[
        pytest.param("memory", marks=pytest.mark.unit),
        pytest.param("postgres", marks=[requires_docker, pytest.mark.integration]),
    ]
)
def repository_factory(request: pytest.FixtureRequest) -> RepositoryFactory:
    """Factory yielding a migrated, empty repository on the parametrized backend.

    Usage:
        async with repository_factory(versioned=False) as repository:
            ...
    """
    backend = request.param
    provision = None
    if backend == "postgres":
        provision = request.getfixturevalue("provisioned_postgres_pool")

    @asynccontextmanager
    async def _make(*, versioned: bool = True) -> AsyncIterator[RecordRepository]:
        if provision is None:
            repository: RecordRepository = MemoryRepository(versioned=versioned)
            await repository.migrate()
            yield repository
            return

        async with provision() as pool:
            repository = PostgresRepository(pool, "records", versioned=versioned)
            await repository.migrate()
            yield repository

    return _make
