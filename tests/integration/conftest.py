"""
Integration test fixtures
Provides a Postgres testcontainer and a connected event store
"""

from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
from testcontainers.postgres import PostgresContainer

from src.store.postgres import PostgresEventStore


@pytest.fixture(scope="session")
def postgres_container() -> Generator[PostgresContainer, None, None]:
    """
    Start a Postgres testcontainer for the test session

    Yields:
        Running PostgresContainer instance
    """
    container = PostgresContainer("postgres:15", driver=None)
    container.start()
    yield container
    container.stop()


@pytest_asyncio.fixture
async def postgres_store(
    postgres_container: PostgresContainer,
) -> AsyncGenerator[PostgresEventStore, None]:
    """
    Connected Postgres event store with an empty events table

    Args:
        postgres_container: Running Postgres container

    Yields:
        PostgresEventStore instance
    """
    store = PostgresEventStore(postgres_container.get_connection_url())
    await store.connect()
    await store._execute("TRUNCATE events")

    yield store

    await store.close()
