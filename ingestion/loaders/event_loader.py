"""
Load mapped events with insert-or-skip semantics (idempotency)
"""

from typing import List, Sequence
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.dialects import postgresql, sqlite
from models.event import Event
from schemas.state import MappedEvent
import logging

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 500


def chunked(items: Sequence, size: int) -> List[Sequence]:
    """Split ``items`` into consecutive slices of at most ``size``, preserving order."""
    if size < 1:
        raise ValueError("chunk size must be positive")
    return [items[i:i + size] for i in range(0, len(items), size)]


class EventLoader:
    """
    Insert events into the ``events`` table.

    Ensures:
    - No duplicate rows on repeated pages (ON CONFLICT (id) DO NOTHING)
    - The returned count is rows actually inserted, not rows attempted

    Transactions belong to the caller: the ingestion loop inserts a batch and
    writes its checkpoint inside one transaction.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    def _insert(self):
        bind = getattr(self.db, "bind", None)
        dialect = getattr(getattr(bind, "dialect", None), "name", None)
        if dialect == "sqlite":
            return sqlite.insert(Event)
        return postgresql.insert(Event)

    async def insert_events(
        self,
        events: List[MappedEvent],
        chunk_size: int = DEFAULT_CHUNK_SIZE
    ) -> int:
        """
        Insert events in chunks, one multi-row statement per chunk.

        Args:
            events: Mapped events in arrival order
            chunk_size: Rows per INSERT statement

        Returns:
            Number of rows inserted (existing ids are skipped and not counted)
        """
        if not events:
            return 0

        inserted = 0

        for index, part in enumerate(chunked(events, chunk_size), start=1):
            stmt = (
                self._insert()
                .values([{"id": event.id, "raw": event.raw} for event in part])
                .on_conflict_do_nothing(index_elements=["id"])
                .returning(Event.id)
            )

            result = await self.db.execute(stmt)
            count = len(result.all())
            inserted += count

            logger.debug(f"Chunk {index}: inserted {count} of {len(part)} events")

        return inserted
