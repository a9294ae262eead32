"""
Shared fixtures for reconciliation tests.

Persistence tests run against an in-memory SQLite database through
aiosqlite; nothing here needs a PostgreSQL server.
"""

import os

# Configure before any application module reads settings
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool

from config import Settings
from database.connection import build_engine, build_session_factory, create_tables


@pytest_asyncio.fixture
async def db_engine():
    """Fresh in-memory database with all tables."""
    engine = build_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def settings():
    """Settings with default tolerances, independent of the environment."""
    return Settings(_env_file=None, ENVIRONMENT="test", DATABASE_URL="sqlite+aiosqlite:///:memory:")

