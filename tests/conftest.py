"""Shared test fixtures for the parallel-task test suite.

Provides a session-scoped Postgres testcontainer and a helper that hands each
test a freshly provisioned, fully migrated database.
"""

from __future__ import annotations

import shutil
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this pytest session.

    Isolation contract:
    - Shared: Docker container process and server instance (session scope).
    - Reset per test fixture usage: each helper call provisions a new database with
      a random name, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    with PostgresContainer("postgres:16") as pg:
        yield pg


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh database, migrate it to head and open an asyncpg pool.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from parallel_task.db import Database
    from parallel_task.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        migrate: bool = True,
        min_pool_size: int = 1,
        max_pool_size: int = 5,
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
        if migrate:
            await run_migrations(db.url)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision
