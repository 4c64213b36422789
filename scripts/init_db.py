import asyncio
import logging
import sys
import os

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from core.config import settings
from models.base import Base
# Import all models to ensure they are registered
from models.event import Event  # noqa: F401
from models.checkpoint import IngestionState  # noqa: F401
from ingestion.checkpoint import CheckpointStore

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def init_database():
    logger.info("Connecting to database...")
    engine = create_async_engine(settings.DATABASE_URL, echo=True)

    async with engine.begin() as conn:
        logger.info("Creating tables...")
        await conn.run_sync(Base.metadata.create_all)
        logger.info("Tables created successfully.")

    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_maker() as session:
        async with session.begin():
            created = await CheckpointStore(session).ensure_row()
        logger.info("Seeded ingestion_state row." if created else "ingestion_state row already present.")

    await engine.dispose()

if __name__ == "__main__":
    asyncio.run(init_database())
