"""
Dump every stored event id to a flat text file
"""

from pathlib import Path
from typing import Union
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from models.event import Event
import logging

logger = logging.getLogger(__name__)


async def export_event_ids(db_session: AsyncSession, path: Union[str, Path]) -> int:
    """
    Stream all event ids, ordered by id, one per line.

    Args:
        db_session: Session to read from (a read transaction is opened here)
        path: Output file; parent directories are created

    Returns:
        Number of ids written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    written = 0

    async with db_session.begin():
        ids = await db_session.stream_scalars(select(Event.id).order_by(Event.id))

        with path.open("w", encoding="utf-8") as out:
            async for event_id in ids:
                out.write(f"{event_id}\n")
                written += 1

    logger.info(f"Exported {written} event ids to {path}")
    return written
