"""
Fixtures for tests that need a real PostgreSQL server.

Row locks and ILIKE matching only mean something on a real database, so these
tests run only when TEST_DATABASE_URL points at a disposable PostgreSQL
database. The schema is dropped and recreated for every test.
"""

import os

import pytest
import pytest_asyncio

from database.connection import Database
from database.models import Base

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


@pytest_asyncio.fixture
async def database():
    db = Database(TEST_DATABASE_URL, pool_size=20, max_overflow=10)
    async with db.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield db
    await db.dispose()


@pytest.fixture
def add_rows(database):
    """Insert rows in their own committed session."""

    async def _add_rows(*rows) -> None:
        async with database.session() as session:
            session.add_all(rows)
            await session.commit()

    return _add_rows
