"""
Checkpoint persistence for the ingestion loop
"""

from sqlalchemy import select, update, func
from sqlalchemy.ext.asyncio import AsyncSession
from models.base import STATE_ROW_ID
from models.checkpoint import IngestionState
from schemas.state import CheckpointState
from core.exceptions import CheckpointError
import logging

logger = logging.getLogger(__name__)

WRITABLE_FIELDS = frozenset({"cursor", "page", "ingested_count", "last_ts_ms"})


class CheckpointStore:
    """
    Read and update the singleton ``ingestion_state`` row.

    The store has no logic of its own and never opens or commits a
    transaction; the ingestion loop owns both.
    """

    def __init__(self, db_session: AsyncSession):
        self.db = db_session

    async def ensure_row(self) -> bool:
        """Seed the singleton row if it does not exist. Returns True when created."""
        result = await self.db.execute(
            select(IngestionState.id).where(IngestionState.id == STATE_ROW_ID)
        )
        if result.scalar_one_or_none() is not None:
            return False

        self.db.add(IngestionState(id=STATE_ROW_ID, cursor=None, page=0, ingested_count=0))
        await self.db.flush()
        logger.info("Seeded ingestion_state row")
        return True

    async def read(self) -> CheckpointState:
        """Return the committed resume point."""
        result = await self.db.execute(
            select(
                IngestionState.cursor,
                IngestionState.page,
                IngestionState.ingested_count,
                IngestionState.last_ts_ms,
            ).where(IngestionState.id == STATE_ROW_ID)
        )
        row = result.mappings().one_or_none()

        if row is None:
            raise CheckpointError(
                "ingestion_state row is missing; run scripts/init_db.py",
                context={"operation": "read", "row_id": STATE_ROW_ID}
            )

        return CheckpointState(**row)

    async def write(self, **fields) -> None:
        """
        Update only the supplied fields plus ``updated_at``.

        Example:
            await store.write(cursor=None)
            await store.write(cursor="c1", ingested_count=2, last_ts_ms=1700000000000)
        """
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise CheckpointError(
                f"Unknown checkpoint fields: {', '.join(sorted(unknown))}",
                context={"operation": "write", "fields": sorted(fields)}
            )

        result = await self.db.execute(
            update(IngestionState)
            .where(IngestionState.id == STATE_ROW_ID)
            .values(**fields, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            raise CheckpointError(
                "ingestion_state row is missing; nothing was updated",
                context={"operation": "write", "fields": sorted(fields)}
            )
