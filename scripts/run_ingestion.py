"""
Script to run the event ingestion loop (or only the id export)
"""

import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

import httpx

from core.config import settings
from core.database import engine, async_session_maker
from core.exceptions import IngestionException
from core.logging import setup_logging
from ingestion.export import export_event_ids
from ingestion.extractors.api_extractor import EventsAPIClient
from ingestion.extractors.transport import RetryingHTTPClient
from ingestion.runner import IngestionRunner

logger = logging.getLogger(__name__)


async def run_ingestion():
    """Ingest until the upstream is exhausted, then export event ids"""
    logger.info("Starting ingestion service...")

    try:
        async with async_session_maker() as session:
            if settings.EXPORT_ONLY:
                logger.info(f"EXPORT_ONLY=true, exporting event ids to {settings.EXPORT_PATH}")
                await export_event_ids(session, settings.EXPORT_PATH)
                return

            settings.require("API_BASE_URL", "API_KEY")

            async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
                fetcher = EventsAPIClient(
                    http=RetryingHTTPClient(client, max_retries=settings.MAX_HTTP_RETRIES),
                    base_url=settings.API_BASE_URL,
                    api_key=settings.API_KEY
                )
                runner = IngestionRunner(
                    session,
                    fetcher,
                    page_size=settings.PAGE_SIZE,
                    log_every_pages=settings.LOG_EVERY_PAGES,
                    tiny_delay_ms=settings.TINY_DELAY_MS,
                    zero_insert_reset_after=settings.ZERO_INSERT_RESET_AFTER,
                    chunk_size=settings.INSERT_CHUNK_SIZE
                )
                result = await runner.run()

            logger.info(
                f"Ingestion finished: ingested={result['ingested_count']}, "
                f"this run={result['inserted_this_run']}, total={result['total']}"
            )

            logger.info(f"Exporting event ids to {settings.EXPORT_PATH}...")
            await export_event_ids(session, settings.EXPORT_PATH)
            logger.info("Export complete")

    except IngestionException as e:
        logger.error(f"Fatal error: {e}", extra={"error_context": e.to_dict()})
        sys.exit(1)
    except Exception:
        logger.exception("Fatal error")
        sys.exit(1)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run_ingestion())
