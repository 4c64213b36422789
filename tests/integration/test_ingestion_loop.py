"""
Integration tests for the resumable ingestion loop

The upstream is replaced by a scripted fetcher; the database is a real
SQLite file so inserts, checkpoints and rollbacks behave as committed.
"""

import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, call
from core.exceptions import (
    BadJsonError,
    CursorExpiredError,
    TransactionError,
    TransportError,
    UpstreamHttpError
)
from ingestion.checkpoint import CheckpointStore
from ingestion.loaders.event_loader import EventLoader
from ingestion.runner import IngestionRunner, IterationOutcome, LoopState
from schemas.page import PageResult, RateLimitSnapshot
from schemas.state import MappedEvent


class ScriptedFetcher:
    """Returns (or raises) the scripted responses in order and records cursors"""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.cursors = []

    async def fetch_page(self, cursor, limit):
        self.cursors.append(cursor)
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def make_page(events, next_cursor=None, has_more=None, remaining=100, **kwargs):
    rate_limit = kwargs.pop("rate_limit", None) or RateLimitSnapshot(remaining=remaining)
    return PageResult(
        events=events,
        next_cursor=next_cursor,
        has_more=has_more,
        rate_limit=rate_limit,
        **kwargs
    )


async def seed_checkpoint(session, **fields):
    async with session.begin():
        await CheckpointStore(session).write(**fields)


async def seed_events(session, *ids):
    async with session.begin():
        await EventLoader(session).insert_events([MappedEvent(id=i, raw={"id": i}) for i in ids])


class TestSingleIteration:
    """Test one fetch → insert+checkpoint → pace cycle"""

    @pytest.mark.asyncio
    async def test_first_iteration_checkpoints_page(self, seeded_session, read_checkpoint, count_events):
        iso_ms = int(datetime(2024, 1, 15, 10, 30, tzinfo=timezone.utc).timestamp() * 1000)
        fetcher = ScriptedFetcher(make_page(
            [
                {"id": "e1", "timestamp": 1700000000},
                {"id": "e2", "createdAt": "2024-01-15T10:30:00.000Z"},
            ],
            next_cursor="c1",
            has_more=True,
            total=10
        ))
        sleep = AsyncMock()
        runner = IngestionRunner(seeded_session, fetcher, sleep=sleep)

        state = await runner.load_state()
        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.ADVANCED
        assert fetcher.cursors == [None]
        assert state.cursor == "c1"
        assert state.ingested_count == 2
        assert state.last_ts_ms == iso_ms
        assert state.total == 10

        checkpoint = await read_checkpoint()
        assert checkpoint.cursor == "c1"
        assert checkpoint.page == 1
        assert checkpoint.ingested_count == 2
        assert checkpoint.last_ts_ms == iso_ms
        assert await count_events() == 2
        sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_events_without_usable_id_are_skipped(self, seeded_session, read_checkpoint, count_events):
        fetcher = ScriptedFetcher(make_page(
            [{"id": "e1"}, {"id": 42}, {"name": "no id"}, {"event_id": "e2"}],
            next_cursor="c1",
            has_more=True
        ))
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        await runner.run_iteration(await runner.load_state())

        assert await count_events() == 2
        assert (await read_checkpoint()).ingested_count == 2

    @pytest.mark.asyncio
    async def test_empty_page_finishes_without_writing(self, seeded_session, read_checkpoint):
        await seed_checkpoint(seeded_session, cursor="c9", ingested_count=4)
        fetcher = ScriptedFetcher(make_page([], next_cursor="c10", has_more=True))
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        state = await runner.load_state()
        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.FINISHED
        checkpoint = await read_checkpoint()
        assert checkpoint.cursor == "c9"
        assert checkpoint.ingested_count == 4

    @pytest.mark.asyncio
    async def test_pacing_uses_rate_limit(self, seeded_session):
        fetcher = ScriptedFetcher(make_page(
            [{"id": "e1"}],
            next_cursor="c1",
            has_more=True,
            rate_limit=RateLimitSnapshot(remaining=0, reset_seconds=3)
        ))
        sleep = AsyncMock()
        runner = IngestionRunner(seeded_session, fetcher, sleep=sleep, tiny_delay_ms=25)

        await runner.run_iteration(await runner.load_state())

        sleep.assert_awaited_once_with(3.2)

    @pytest.mark.asyncio
    async def test_tiny_delay_between_pages(self, seeded_session):
        fetcher = ScriptedFetcher(make_page([{"id": "e1"}], next_cursor="c1", has_more=True))
        sleep = AsyncMock()
        runner = IngestionRunner(seeded_session, fetcher, sleep=sleep, tiny_delay_ms=25)

        await runner.run_iteration(await runner.load_state())

        sleep.assert_awaited_once_with(0.025)


class TestRun:
    """Test complete runs"""

    @pytest.mark.asyncio
    async def test_run_until_has_more_false(self, seeded_session, read_checkpoint, count_events):
        fetcher = ScriptedFetcher(
            make_page([{"id": "a"}, {"id": "b"}], next_cursor="c1", has_more=True, total=4),
            make_page([{"id": "b"}, {"id": "c"}], next_cursor="c2", has_more=True),
            make_page([{"id": "d"}], has_more=False),
        )
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        result = await runner.run()

        assert result["status"] == "success"
        assert result["ingested_count"] == 4
        assert result["inserted_this_run"] == 4
        assert result["iterations"] == 3
        assert result["total"] == 4
        assert fetcher.cursors == [None, "c1", "c2"]
        assert await count_events() == 4

        checkpoint = await read_checkpoint()
        assert checkpoint.ingested_count == 4
        assert checkpoint.page == 3
        assert checkpoint.cursor is None

    @pytest.mark.asyncio
    async def test_resume_from_checkpoint(self, seeded_session, read_checkpoint):
        await seed_checkpoint(seeded_session, cursor="c5", page=5, ingested_count=10, last_ts_ms=1000)
        fetcher = ScriptedFetcher(make_page([{"id": "x"}], has_more=False))
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        result = await runner.run()

        assert fetcher.cursors == ["c5"]
        assert result["ingested_count"] == 11
        assert result["inserted_this_run"] == 1

        checkpoint = await read_checkpoint()
        assert checkpoint.ingested_count == 11
        assert checkpoint.last_ts_ms == 1001
        assert checkpoint.page == 6

    @pytest.mark.asyncio
    async def test_run_seeds_missing_checkpoint_row(self, db_session, read_checkpoint):
        fetcher = ScriptedFetcher(make_page([{"id": "x"}], has_more=False))
        runner = IngestionRunner(db_session, fetcher, sleep=AsyncMock())

        await runner.run()

        assert (await read_checkpoint()).ingested_count == 1

    @pytest.mark.asyncio
    async def test_replay_after_crash_does_not_double_count(self, seeded_session, read_checkpoint, count_events):
        """Events committed before a lost checkpoint are re-fetched and skipped"""
        await seed_events(seeded_session, "a", "b")
        fetcher = ScriptedFetcher(
            make_page([{"id": "a"}, {"id": "b"}], next_cursor="c1", has_more=True),
            make_page([{"id": "c"}], has_more=False),
        )
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        result = await runner.run()

        assert result["inserted_this_run"] == 1
        assert await count_events() == 3
        assert (await read_checkpoint()).ingested_count == 1


class TestFetchRecovery:
    """Test local recovery from upstream failures"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        CursorExpiredError(410, '{"code":"CURSOR_EXPIRED"}'),
        UpstreamHttpError(400, "Cursor expired"),
        UpstreamHttpError(400, "expired_cursor_test"),
    ])
    async def test_cursor_expiry_restarts_pagination(self, seeded_session, read_checkpoint, error):
        await seed_checkpoint(seeded_session, cursor="stale", ingested_count=7)
        fetcher = ScriptedFetcher(error, make_page([{"id": "e1"}], has_more=False))
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        state = await runner.load_state()
        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.RESET
        assert state.cursor is None
        assert (await read_checkpoint()).cursor is None

        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.FINISHED
        assert fetcher.cursors == ["stale", None]
        assert (await read_checkpoint()).ingested_count == 8

    @pytest.mark.asyncio
    async def test_bad_json_retries_same_cursor(self, seeded_session, read_checkpoint):
        await seed_checkpoint(seeded_session, cursor="c3")
        fetcher = ScriptedFetcher(BadJsonError("Failed to parse JSON response"))
        sleep = AsyncMock()
        runner = IngestionRunner(seeded_session, fetcher, sleep=sleep)

        state = await runner.load_state()
        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.RETRY
        assert state.cursor == "c3"
        sleep.assert_awaited_once_with(0.5)
        assert (await read_checkpoint()).cursor == "c3"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [502, 503, 504])
    async def test_gateway_errors_retry_after_one_second(self, seeded_session, status):
        await seed_checkpoint(seeded_session, cursor="c3")
        fetcher = ScriptedFetcher(UpstreamHttpError(status, "upstream down"))
        sleep = AsyncMock()
        runner = IngestionRunner(seeded_session, fetcher, sleep=sleep)

        state = await runner.load_state()
        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.RETRY
        assert state.cursor == "c3"
        sleep.assert_awaited_once_with(1.0)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        UpstreamHttpError(401, "unauthorized"),
        UpstreamHttpError(500, "internal error"),
        TransportError("Network error after 7 attempts"),
    ])
    async def test_other_errors_are_fatal(self, seeded_session, read_checkpoint, error):
        await seed_checkpoint(seeded_session, cursor="c3", ingested_count=2)
        fetcher = ScriptedFetcher(error)
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        with pytest.raises(type(error)):
            await runner.run()

        checkpoint = await read_checkpoint()
        assert checkpoint.cursor == "c3"
        assert checkpoint.ingested_count == 2

    @pytest.mark.asyncio
    async def test_run_continues_after_retry(self, seeded_session):
        fetcher = ScriptedFetcher(
            UpstreamHttpError(503, ""),
            BadJsonError("oops"),
            make_page([{"id": "a"}], has_more=False),
        )
        sleep = AsyncMock()
        runner = IngestionRunner(seeded_session, fetcher, sleep=sleep)

        result = await runner.run()

        assert result["ingested_count"] == 1
        assert result["iterations"] == 3
        assert fetcher.cursors == [None, None, None]
        assert sleep.await_args_list == [call(1.0), call(0.5)]


class TestSessionReset:
    """Test escaping wedged pagination sessions"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("has_more", [True, None])
    async def test_missing_next_cursor_restarts(self, seeded_session, read_checkpoint, has_more):
        await seed_checkpoint(seeded_session, cursor="c1")
        fetcher = ScriptedFetcher(make_page([{"id": "e1"}], next_cursor=None, has_more=has_more))
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        state = await runner.load_state()
        outcome = await runner.run_iteration(state)

        assert outcome is IterationOutcome.RESET
        assert state.cursor is None

        checkpoint = await read_checkpoint()
        assert checkpoint.cursor is None
        assert checkpoint.ingested_count == 1

    @pytest.mark.asyncio
    async def test_stuck_cursor_is_reset(self, seeded_session, read_checkpoint):
        """Zero inserts while the same next cursor keeps coming back"""
        await seed_events(seeded_session, "dup")
        fetcher = ScriptedFetcher(*[
            make_page([{"id": "dup"}], next_cursor="same", has_more=True) for _ in range(8)
        ])
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        state = await runner.load_state()
        outcomes = [await runner.run_iteration(state) for _ in range(8)]

        assert outcomes[:7] == [IterationOutcome.ADVANCED] * 7
        assert outcomes[7] is IterationOutcome.RESET
        assert state.cursor is None
        assert state.zero_insert_streak == 0
        assert state.same_cursor_streak == 0
        assert state.last_next_cursor is None

        checkpoint = await read_checkpoint()
        assert checkpoint.cursor is None
        assert checkpoint.ingested_count == 0

    @pytest.mark.asyncio
    async def test_advancing_cursor_is_not_reset(self, seeded_session, read_checkpoint):
        """Zero inserts with a moving cursor is overlap, not a stuck session"""
        await seed_events(seeded_session, "dup1", "dup2", "dup3")
        fetcher = ScriptedFetcher(
            make_page([{"id": "dup1"}], next_cursor="c1", has_more=True),
            make_page([{"id": "dup2"}], next_cursor="c2", has_more=True),
            make_page([{"id": "dup3"}], next_cursor="c3", has_more=True),
        )
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock(), zero_insert_reset_after=3)

        state = await runner.load_state()
        outcomes = [await runner.run_iteration(state) for _ in range(3)]

        assert outcomes == [IterationOutcome.ADVANCED] * 3
        assert state.cursor == "c3"
        assert state.zero_insert_streak == 0
        assert (await read_checkpoint()).cursor == "c3"

    @pytest.mark.asyncio
    async def test_inserts_break_the_zero_streak(self, seeded_session):
        await seed_events(seeded_session, "dup")
        fetcher = ScriptedFetcher(
            make_page([{"id": "dup"}], next_cursor="same", has_more=True),
            make_page([{"id": "dup"}], next_cursor="same", has_more=True),
            make_page([{"id": "new"}], next_cursor="same", has_more=True),
        )
        runner = IngestionRunner(seeded_session, fetcher, sleep=AsyncMock())

        state = await runner.load_state()
        for _ in range(3):
            await runner.run_iteration(state)

        assert state.zero_insert_streak == 0
        assert state.same_cursor_streak == 2


class TestAtomicity:
    """Test that events and checkpoint commit or roll back together"""

    @pytest.mark.asyncio
    async def test_checkpoint_failure_rolls_back_inserts(self, seeded_session, read_checkpoint, count_events):
        class FailingCheckpointStore(CheckpointStore):
            async def write(self, **fields):
                await super().write(**fields)
                raise RuntimeError("connection lost")

        await seed_checkpoint(seeded_session, cursor="c1", ingested_count=3)
        fetcher = ScriptedFetcher(make_page([{"id": "e1"}, {"id": "e2"}], next_cursor="c2", has_more=True))
        runner = IngestionRunner(
            seeded_session,
            fetcher,
            sleep=AsyncMock(),
            checkpoint_store=FailingCheckpointStore(seeded_session)
        )
        state = LoopState(cursor="c1", ingested_count=3)

        with pytest.raises(TransactionError) as exc_info:
            await runner.run_iteration(state)

        assert isinstance(exc_info.value.original_exception, RuntimeError)
        assert exc_info.value.context["next_cursor"] == "c2"
        assert state.cursor == "c1"
        assert state.ingested_count == 3
        assert await count_events() == 0

        checkpoint = await read_checkpoint()
        assert checkpoint.cursor == "c1"
        assert checkpoint.ingested_count == 3
