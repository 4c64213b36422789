# ============================================================================
# File: ingestion/runner.py
# Description: Resumable ingestion loop with checkpointing and self-healing
# ============================================================================
"""
Ingestion Runner - drives fetch → map → insert+checkpoint → pace.

This module provides the resumable ingestion loop with:
- Cursor-based pagination resumed from the committed checkpoint
- Atomic insert + checkpoint per page (a crash repeats at most one page)
- Local recovery from cursor expiry, malformed JSON and upstream 502/503/504
- Stuck-session detection (zero inserts while the cursor stops advancing)
- Rate-limit aware pacing between pages

State machine, one ``run_iteration`` call per page:

    FETCHING ──error──> cursor expired  → clear cursor, persist → RESET
       │                bad JSON        → wait 500ms            → RETRY
       │                502/503/504     → wait 1000ms           → RETRY
       │                anything else   → raise (fatal)
       ▼
    empty page ─────────────────────────────────────────────────→ FINISHED
       ▼
    MAPPING → INSERTING+CHECKPOINTING (one transaction)
       ▼
    zero-insert streak ≥ threshold and cursor repeating → clear cursor → RESET
    has_more is False ──────────────────────────────────────────→ FINISHED
    no next cursor    → clear cursor, persist ─────────────────→ RESET
       ▼
    PACING ─────────────────────────────────────────────────────→ ADVANCED
"""

import asyncio
import enum
import math
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from core.exceptions import (
    ExtractionError,
    BadJsonError,
    UpstreamHttpError,
    TransactionError,
    is_cursor_expired
)
from ingestion.checkpoint import CheckpointStore
from ingestion.extractors.api_extractor import EventsAPIClient
from ingestion.loaders.event_loader import EventLoader, DEFAULT_CHUNK_SIZE
from ingestion.progress import ProgressTracker
from ingestion.timestamps import extract_ts_ms
from schemas.page import PageResult, RateLimitSnapshot
from schemas.state import CheckpointState, MappedEvent

logger = logging.getLogger(__name__)

ID_FIELDS = ("id", "eventId", "event_id")

BAD_JSON_RETRY_DELAY_MS = 500
UPSTREAM_RETRY_DELAY_MS = 1000
RECOVERABLE_UPSTREAM_STATUSES = frozenset({502, 503, 504})

STUCK_CURSOR_REPEATS = 2

RETRY_AFTER_MARGIN_MS = 150
RATE_LIMIT_RESET_MARGIN_MS = 200
DEFAULT_RESET_SECONDS = 60


class IterationOutcome(str, enum.Enum):
    """Result of one loop iteration"""
    ADVANCED = "advanced"    # batch committed, continue with the next cursor
    RETRY = "retry"          # transient failure, same cursor again
    RESET = "reset"          # cursor cleared, pagination restarts
    FINISHED = "finished"    # upstream has no more events


@dataclass
class LoopState:
    """Mutable state carried from one iteration to the next."""
    cursor: Optional[str] = None
    page: int = 0
    ingested_count: int = 0
    last_ts_ms: Optional[int] = None

    iteration: int = 0
    zero_insert_streak: int = 0
    same_cursor_streak: int = 0
    last_next_cursor: Optional[str] = None
    total: Optional[float] = None

    @classmethod
    def from_checkpoint(cls, checkpoint: CheckpointState) -> "LoopState":
        return cls(
            cursor=checkpoint.cursor,
            page=checkpoint.page,
            ingested_count=checkpoint.ingested_count,
            last_ts_ms=checkpoint.last_ts_ms,
        )


def map_events(events: Iterable[Any]) -> List[MappedEvent]:
    """
    Keep events with a usable string id, in arrival order.

    The id is the first non-null of ``id``, ``eventId``, ``event_id``; an
    event whose id is not a non-empty string is dropped.
    """
    mapped = []
    for event in events:
        if not isinstance(event, dict):
            continue
        event_id = next(
            (event[field] for field in ID_FIELDS if event.get(field) is not None),
            None
        )
        if not isinstance(event_id, str) or not event_id:
            continue
        mapped.append(MappedEvent(id=event_id, raw=event))
    return mapped


def next_high_water_mark(events: Iterable[MappedEvent], prior: Optional[int]) -> Optional[int]:
    """
    New high-water timestamp for a batch.

    Never moves backward, and once a mark exists it grows by at least 1 per
    batch even when the batch carries no timestamps.
    """
    candidates = [ts for ts in (extract_ts_ms(event.raw) for event in events) if ts is not None]
    if prior is not None:
        candidates.append(prior + 1)
    return max(candidates) if candidates else None


def pacing_delay_ms(rate_limit: RateLimitSnapshot, tiny_delay_ms: int = 0) -> int:
    """
    Wait before the next page, in priority order:
    explicit Retry-After, exhausted quota until reset, fixed tiny delay.
    """
    retry_after = rate_limit.retry_after_seconds
    if retry_after is not None and retry_after > 0:
        return math.ceil(retry_after * 1000) + RETRY_AFTER_MARGIN_MS

    if rate_limit.remaining is not None and rate_limit.remaining <= 0:
        reset = rate_limit.reset_seconds if rate_limit.reset_seconds is not None else DEFAULT_RESET_SECONDS
        return math.ceil(reset * 1000) + RATE_LIMIT_RESET_MARGIN_MS

    if tiny_delay_ms > 0:
        return tiny_delay_ms

    return 0


class IngestionRunner:
    """
    Resumable ingestion loop.

    Responsibilities:
    - Resume from the committed checkpoint
    - Commit each page's events together with the checkpoint that covers them
    - Recover locally from transient upstream failures
    - Escape wedged pagination sessions
    - Pace requests according to upstream rate-limit signals
    """

    def __init__(
        self,
        db_session: AsyncSession,
        fetcher: EventsAPIClient,
        page_size: int = 1000,
        log_every_pages: int = 5,
        tiny_delay_ms: int = 0,
        zero_insert_reset_after: int = 8,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        event_loader: Optional[EventLoader] = None,
        checkpoint_store: Optional[CheckpointStore] = None
    ):
        self.db = db_session
        self.fetcher = fetcher
        self.page_size = page_size
        self.log_every_pages = max(1, log_every_pages)
        self.tiny_delay_ms = tiny_delay_ms
        self.zero_insert_reset_after = zero_insert_reset_after
        self.chunk_size = chunk_size
        self.sleep = sleep
        self.events = event_loader or EventLoader(db_session)
        self.checkpoints = checkpoint_store or CheckpointStore(db_session)
        self.progress: Optional[ProgressTracker] = None

    async def load_state(self) -> LoopState:
        """Read the committed checkpoint, seeding the row on a fresh database."""
        async with self.db.begin():
            await self.checkpoints.ensure_row()
            checkpoint = await self.checkpoints.read()

        logger.info(
            f"Loaded ingestion_state (resume point): {checkpoint.model_dump()}",
            extra={"checkpoint": checkpoint.model_dump()}
        )
        return LoopState.from_checkpoint(checkpoint)

    async def run(self, state: Optional[LoopState] = None) -> Dict[str, Any]:
        """
        Run until the upstream signals the end of the stream.

        Args:
            state: Starting state; loaded from the checkpoint when omitted

        Returns:
            Dictionary with run statistics:
            - status: "success"
            - ingested_count: Total rows ingested across all runs
            - inserted_this_run: Rows inserted by this run
            - iterations: Loop iterations executed
            - total: Upstream-reported total, if any
            - last_ts_ms: High-water timestamp

        Raises:
            TransactionError: Insert + checkpoint failed (rolled back)
            ExtractionError: Non-recoverable fetch failure
        """
        if state is None:
            state = await self.load_state()

        start_count = state.ingested_count
        self.progress = ProgressTracker(start_count)

        outcome = None
        while outcome is not IterationOutcome.FINISHED:
            outcome = await self.run_iteration(state)

        result = {
            "status": "success",
            "ingested_count": state.ingested_count,
            "inserted_this_run": state.ingested_count - start_count,
            "iterations": state.iteration,
            "total": state.total,
            "last_ts_ms": state.last_ts_ms,
        }

        logger.info(
            f"Ingestion completed: ingested={state.ingested_count}, total={state.total}",
            extra={"run_result": result}
        )
        return result

    async def run_iteration(self, state: LoopState) -> IterationOutcome:
        """Execute one fetch → insert+checkpoint → pace cycle, mutating ``state``."""
        state.iteration += 1
        if self.progress is None:
            self.progress = ProgressTracker(state.ingested_count)

        # --------------------------------------------------
        # FETCH
        # --------------------------------------------------
        try:
            page = await self.fetcher.fetch_page(state.cursor, self.page_size)
        except ExtractionError as e:
            outcome = await self._recover_from_fetch_error(state, e)
            if outcome is None:
                raise
            return outcome

        if state.total is None and page.total:
            state.total = page.total

        if state.iteration % self.log_every_pages == 0:
            logger.info(
                f"Cursor debug: iter={state.iteration} "
                f"cursor_present={state.cursor is not None} "
                f"next_cursor_present={page.next_cursor is not None} "
                f"cursor_expires_in={page.cursor_expires_in} "
                f"rate_remaining={page.rate_limit.remaining}"
            )

        if not page.events:
            logger.info(f"No events returned; stopping (iter={state.iteration})")
            return IterationOutcome.FINISHED

        # --------------------------------------------------
        # MAP
        # --------------------------------------------------
        mapped = map_events(page.events)
        high_water = next_high_water_mark(mapped, state.last_ts_ms)

        # --------------------------------------------------
        # INSERT + CHECKPOINT (one transaction)
        # --------------------------------------------------
        started_cursor = state.cursor
        inserted = await self._commit_batch(state, mapped, page.next_cursor, high_water)

        # --------------------------------------------------
        # STUCK-SESSION DETECTION
        # --------------------------------------------------
        self._track_streaks(state, page.next_cursor, inserted)

        if state.zero_insert_streak >= self.zero_insert_reset_after:
            if state.same_cursor_streak >= STUCK_CURSOR_REPEATS:
                logger.warning(
                    "0 inserts and cursor not advancing; resetting cursor session",
                    extra={
                        "zero_insert_streak": state.zero_insert_streak,
                        "same_cursor_streak": state.same_cursor_streak,
                        "started_cursor": started_cursor,
                    }
                )
                await self._reset_cursor(state)
                state.zero_insert_streak = 0
                state.same_cursor_streak = 0
                state.last_next_cursor = None
                return IterationOutcome.RESET

            logger.warning(
                "0 inserts but cursor is advancing; continuing (likely overlap after reset)",
                extra={
                    "zero_insert_streak": state.zero_insert_streak,
                    "same_cursor_streak": state.same_cursor_streak,
                }
            )
            state.zero_insert_streak = 0

        if state.iteration % self.log_every_pages == 0:
            self._log_progress(state, inserted, page)

        # --------------------------------------------------
        # STOP CONDITIONS
        # --------------------------------------------------
        if page.has_more is False:
            logger.info(f"Reached end (has_more=False, iter={state.iteration})")
            return IterationOutcome.FINISHED

        if not page.next_cursor:
            logger.warning("Missing next cursor but has_more is not False; restarting cursor session")
            await self._reset_cursor(state)
            return IterationOutcome.RESET

        # --------------------------------------------------
        # PACING
        # --------------------------------------------------
        await self._sleep_ms(pacing_delay_ms(page.rate_limit, self.tiny_delay_ms))
        return IterationOutcome.ADVANCED

    async def _recover_from_fetch_error(
        self,
        state: LoopState,
        error: ExtractionError
    ) -> Optional[IterationOutcome]:
        """Apply local recovery; None means the error is fatal."""
        if is_cursor_expired(error):
            logger.warning(
                "Cursor expired; restarting cursor",
                extra={"cursor": state.cursor}
            )
            await self._reset_cursor(state)
            return IterationOutcome.RESET

        if isinstance(error, BadJsonError):
            logger.warning(f"Bad JSON from API; retrying shortly: {error.message}")
            await self._sleep_ms(BAD_JSON_RETRY_DELAY_MS)
            return IterationOutcome.RETRY

        if isinstance(error, UpstreamHttpError) and error.status_code in RECOVERABLE_UPSTREAM_STATUSES:
            logger.warning(f"Upstream error; retrying shortly: {error.message}")
            await self._sleep_ms(UPSTREAM_RETRY_DELAY_MS)
            return IterationOutcome.RETRY

        logger.error(
            f"Fatal fetch error: {error.message}",
            extra={"error_context": error.to_dict()}
        )
        return None

    async def _commit_batch(
        self,
        state: LoopState,
        mapped: List[MappedEvent],
        next_cursor: Optional[str],
        high_water: Optional[int]
    ) -> int:
        """Insert the batch and advance the checkpoint atomically."""
        try:
            async with self.db.begin():
                inserted = await self.events.insert_events(mapped, self.chunk_size)
                new_count = state.ingested_count + inserted
                await self.checkpoints.write(
                    cursor=next_cursor,
                    page=state.page + 1,
                    ingested_count=new_count,
                    last_ts_ms=high_water
                )
        except Exception as e:
            raise TransactionError(
                "Insert and checkpoint rolled back",
                context={
                    "cursor": state.cursor,
                    "next_cursor": next_cursor,
                    "batch_size": len(mapped)
                },
                original_exception=e
            )

        state.cursor = next_cursor
        state.page += 1
        state.ingested_count = new_count
        state.last_ts_ms = high_water
        return inserted

    async def _reset_cursor(self, state: LoopState) -> None:
        """Persist ``cursor = NULL`` so pagination restarts from the beginning."""
        async with self.db.begin():
            await self.checkpoints.write(cursor=None)
        state.cursor = None

    @staticmethod
    def _track_streaks(state: LoopState, next_cursor: Optional[str], inserted: int) -> None:
        if next_cursor and next_cursor == state.last_next_cursor:
            state.same_cursor_streak += 1
        else:
            state.same_cursor_streak = 0
            if next_cursor:
                state.last_next_cursor = next_cursor

        if inserted == 0:
            state.zero_insert_streak += 1
        else:
            state.zero_insert_streak = 0

    def _log_progress(self, state: LoopState, inserted: int, page: PageResult) -> None:
        stats = self.progress.snapshot(state.ingested_count, state.total)
        stats.update({
            "iter": state.iteration,
            "inserted_last_page": inserted,
            "cursor_present": state.cursor is not None,
            "cursor_expires_in": page.cursor_expires_in,
        })
        logger.info(f"Progress: {stats}", extra={"progress": stats})

    async def _sleep_ms(self, delay_ms: int) -> None:
        if delay_ms > 0:
            await self.sleep(delay_ms / 1000)
