"""
Pytest configuration and fixtures
"""

import pytest
import pytest_asyncio
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import NullPool
from typing import AsyncGenerator
from models import Base, Event
from ingestion.checkpoint import CheckpointStore


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create a throwaway SQLite database with the ingestion tables"""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ingestion_test.db'}",
        echo=False,
        poolclass=NullPool,  # Disable connection pooling for tests
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Database session without the checkpoint row"""
    session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with session_maker() as session:
        yield session


@pytest_asyncio.fixture(scope="function")
async def seeded_session(db_session) -> AsyncSession:
    """Database session with the checkpoint row in its initial state"""
    async with db_session.begin():
        await CheckpointStore(db_session).ensure_row()
    return db_session


@pytest.fixture
def read_checkpoint(db_session):
    """Read the committed checkpoint in its own transaction"""
    async def _read():
        async with db_session.begin():
            return await CheckpointStore(db_session).read()
    return _read


@pytest.fixture
def count_events(db_session):
    """Count rows in the events table in its own transaction"""
    async def _count():
        async with db_session.begin():
            result = await db_session.execute(select(func.count()).select_from(Event))
            return result.scalar_one()
    return _count


@pytest.fixture
def mock_events():
    """Mock upstream events using the id/timestamp field variants"""
    return [
        {
            "id": "evt_001",
            "type": "page_view",
            "timestamp": 1700000000,
            "properties": {"path": "/home"}
        },
        {
            "eventId": "evt_002",
            "type": "click",
            "createdAt": "2024-01-15T10:30:00.000Z",
            "properties": {"target": "signup"}
        },
        {
            "event_id": "evt_003",
            "type": "purchase",
            "ts": 1705314700000,
            "properties": {"amount": 19.99}
        }
    ]
