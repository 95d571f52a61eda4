"""Unit tests for IndexerCore.

Test Strategy:
1. Test a window is handed to handlers in block/log order and the cursor advances
2. Test handler failure rolls the whole window back (cursor included)
3. Test re-processing an indexed window is a no-op
4. Test adaptive window sizing (shrink on range errors, grow back afterwards)
5. Test pacing, back-pressure and the head-behind-cursor anomaly

Each test follows the pattern:
- Given: A FakeChain with logs and an indexer over one or two streams
- When: tick() is called
- Then: Handlers, cursor and raw events reflect exactly one window
"""
import pytest

from conftest import POOL_CORE, FakeChain, make_log
from marketsync.chain.contracts import ContractRegistry
from marketsync.core.database import session_scope
from marketsync.core.errors import BlockRangeTooLarge
from marketsync.models import ChainEvent, IndexerCursor
from marketsync.repositories import AnomalyRepository
from marketsync.services.indexer import IndexerCore, Stream, jsonable


class Recorder:
    """Async handler that records (name, poolId) and can be told to fail."""

    def __init__(self, fail_on=None):
        self.seen = []
        self.fail_on = fail_on

    async def __call__(self, db, event):
        if self.fail_on is not None and event.args.get("poolId") == self.fail_on:
            raise RuntimeError(f"handler failed on pool {self.fail_on}")
        self.seen.append((event.name, event.args["poolId"]))


def pool_stream(recorder, name="pool_core"):
    return Stream(name, "PoolCore", {"BetPlaced": recorder, "PoolRefunded": recorder})


def bet_log(registry, pool_id, block, log_index=0):
    return make_log(registry, "PoolCore", "BetPlaced", {
        "poolId": pool_id, "bettor": "0x" + "cc" * 20, "amount": 10 ** 17, "isForOutcome": True,
    }, block=block, log_index=log_index)


def cursor_block(session_factory, stream="pool_core"):
    with session_scope(session_factory) as db:
        cursor = db.get(IndexerCursor, stream)
        return None if cursor is None else cursor.last_indexed_block


def event_count(session_factory):
    with session_scope(session_factory) as db:
        return db.query(ChainEvent).count()


class TestIndexerWindows:
    """Window processing and atomicity."""

    # Happy Path Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_tick_processes_logs_in_chain_order(self, registry, session_factory):
        """Should call handlers sorted by (block, log index) and advance to the confirmed head."""
        chain = FakeChain(registry, head=100)
        chain.logs = [
            bet_log(registry, 3, block=40, log_index=1),
            make_log(registry, "PoolCore", "PoolRefunded", {"poolId": 2, "reason": "no bets"}, block=12),
            bet_log(registry, 1, block=40, log_index=0),
        ]
        recorder = Recorder()
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(recorder)])

        result = await indexer.tick()

        assert recorder.seen == [("PoolRefunded", 2), ("BetPlaced", 1), ("BetPlaced", 3)]
        assert result.confirmed == 97
        assert result.windows[0].from_block == 0
        assert result.windows[0].to_block == 97
        assert result.windows[0].new_events == 3
        assert cursor_block(session_factory) == 97
        assert event_count(session_factory) == 3

    @pytest.mark.asyncio
    async def test_caught_up_stream_does_not_fetch(self, registry, session_factory):
        """Should skip getLogs when the cursor is at the confirmed head."""
        chain = FakeChain(registry, head=100)
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(Recorder())])

        await indexer.tick()
        result = await indexer.tick()

        assert len(chain.get_logs_calls) == 1
        assert result.windows == []
        assert result.lag == {"pool_core": 0}

    @pytest.mark.asyncio
    async def test_start_block_is_honoured(self, registry, session_factory):
        """Should begin a new cursor at the configured deployment block."""
        chain = FakeChain(registry, head=100)
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(Recorder())], start_block=60)

        await indexer.tick()

        assert chain.get_logs_calls == [(60, 97)]

    @pytest.mark.asyncio
    async def test_unconfigured_contract_is_skipped(self, session_factory):
        """Should ignore streams whose contract has no address."""
        registry = ContractRegistry({"PoolCore": POOL_CORE})
        chain = FakeChain(registry, head=100)
        stream = Stream("oddyssey", "Oddyssey", {"CycleStarted": Recorder()})
        indexer = IndexerCore(chain, registry, session_factory, [stream])

        result = await indexer.tick()

        assert result.windows == []
        assert chain.get_logs_calls == []

    # Atomicity Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_handler_failure_rolls_back_window(self, registry, session_factory):
        """Should leave cursor and raw events untouched when any handler fails."""
        chain = FakeChain(registry, head=100)
        chain.logs = [bet_log(registry, 1, block=10), bet_log(registry, 2, block=20)]
        recorder = Recorder(fail_on=2)
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(recorder)])

        with pytest.raises(RuntimeError):
            await indexer.tick()

        assert cursor_block(session_factory) is None
        assert event_count(session_factory) == 0

        recorder.fail_on = None
        await indexer.tick()

        assert cursor_block(session_factory) == 97
        assert event_count(session_factory) == 2

    @pytest.mark.asyncio
    async def test_failing_stream_does_not_block_others(self, registry, session_factory):
        """Should index healthy streams and re-raise the failure after the tick."""
        chain = FakeChain(registry, head=100)
        chain.logs = [
            bet_log(registry, 9, block=10),
            make_log(registry, "Oddyssey", "CycleStarted", {"cycleId": 1, "endTime": 2}, block=11),
        ]

        async def on_cycle(db, event):
            pass

        streams = [
            pool_stream(Recorder(fail_on=9)),
            Stream("oddyssey", "Oddyssey", {"CycleStarted": on_cycle}),
        ]
        indexer = IndexerCore(chain, registry, session_factory, streams)

        with pytest.raises(RuntimeError):
            await indexer.tick()

        assert cursor_block(session_factory, "pool_core") is None
        assert cursor_block(session_factory, "oddyssey") == 97

    @pytest.mark.asyncio
    async def test_reprocessing_window_is_idempotent(self, registry, session_factory):
        """Should count already-seen logs as duplicates and not re-run handlers."""
        chain = FakeChain(registry, head=100)
        chain.logs = [bet_log(registry, 1, block=10), bet_log(registry, 2, block=20)]
        recorder = Recorder()
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(recorder)])
        await indexer.tick()

        with session_scope(session_factory) as db:
            db.get(IndexerCursor, "pool_core").last_indexed_block = 5

        result = await indexer.tick()

        assert result.windows[0].duplicates == 2
        assert result.windows[0].new_events == 0
        assert len(recorder.seen) == 2
        assert event_count(session_factory) == 2


class TestIndexerAdaptiveWindow:
    """Range-limit shrink and growth."""

    @pytest.mark.asyncio
    async def test_range_error_halves_window_until_accepted(self, registry, session_factory):
        """Should halve the batch and retry the same start block."""
        chain = FakeChain(registry, head=1003)
        chain.range_limit = 100
        stream = pool_stream(Recorder())
        indexer = IndexerCore(chain, registry, session_factory, [stream])

        await indexer.tick()

        assert chain.get_logs_calls == [(0, 499), (0, 249), (0, 124), (0, 61)]
        assert stream.batch_size == 62
        assert cursor_block(session_factory) == 61

    @pytest.mark.asyncio
    async def test_window_grows_back_after_shrink(self, registry, session_factory):
        """Should grow by the growth step on each tick after the shrinking one."""
        chain = FakeChain(registry, head=1003)
        chain.range_limit = 100
        stream = pool_stream(Recorder())
        indexer = IndexerCore(chain, registry, session_factory, [stream], batch_growth=25, growth_ticks=2)

        await indexer.tick()
        assert stream.batch_size == 62

        chain.range_limit = None
        await indexer.tick()
        assert chain.get_logs_calls[-1] == (62, 123)
        assert stream.batch_size == 87

        await indexer.tick()
        await indexer.tick()
        assert stream.batch_size == 112
        assert stream.growth_ticks_left == 0

    @pytest.mark.asyncio
    async def test_deployment_window_halves_then_recovers_over_ten_ticks(self, registry, session_factory):
        """Should retry [100000, 100249] after a refused 500-block window and grow back to 500."""
        chain = FakeChain(registry, head=105_003)
        chain.range_limit = 300
        stream = pool_stream(Recorder())
        indexer = IndexerCore(chain, registry, session_factory, [stream], start_block=100_000)

        await indexer.tick()

        assert chain.get_logs_calls == [(100_000, 100_499), (100_000, 100_249)]
        assert stream.batch_size == 250
        assert cursor_block(session_factory) == 100_249

        chain.range_limit = None
        sizes = []
        for _ in range(10):
            await indexer.tick()
            sizes.append(stream.batch_size)

        assert chain.get_logs_calls[2] == (100_250, 100_499)
        assert sizes == list(range(275, 501, 25))
        assert stream.growth_ticks_left == 0

        await indexer.tick()
        assert stream.batch_size == 500

    @pytest.mark.asyncio
    async def test_range_error_at_floor_propagates(self, registry, session_factory):
        """Should give up once the window cannot shrink further."""
        chain = FakeChain(registry, head=1003)
        chain.range_limit = 10
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(Recorder())], batch_min=25)

        with pytest.raises(BlockRangeTooLarge):
            await indexer.tick()

        assert cursor_block(session_factory) is None

    @pytest.mark.asyncio
    async def test_batch_size_persists_on_cursor(self, registry, session_factory):
        """Should resume with the stored batch size after a restart."""
        chain = FakeChain(registry, head=1003)
        chain.range_limit = 100
        await IndexerCore(chain, registry, session_factory, [pool_stream(Recorder())]).tick()

        chain.range_limit = None
        fresh = pool_stream(Recorder())
        await IndexerCore(chain, registry, session_factory, [fresh]).tick()

        assert fresh.batch_size == 62
        assert chain.get_logs_calls[-1] == (62, 123)


class TestIndexerPacing:
    """Poll interval, back-pressure and anomalies."""

    @pytest.mark.asyncio
    async def test_lagging_indexer_polls_fast_and_applies_backpressure(self, registry, session_factory):
        """Should use the active interval and toggle gateway back-pressure while far behind."""
        now = [1000.0]
        chain = FakeChain(registry, head=2003)
        indexer = IndexerCore(
            chain, registry, session_factory, [pool_stream(Recorder())],
            batch_initial=100, batch_max=100, lag_warning_blocks=500, clock=lambda: now[0],
        )

        result = await indexer.tick()

        assert result.max_lag == 1901
        assert indexer.next_run_at == 1010.0
        assert chain.backpressure == [True]
        assert await indexer.maybe_tick() is None

        chain.head = 203
        now[0] = 1010.0
        await indexer.maybe_tick()
        assert chain.backpressure == [True, False]

    @pytest.mark.asyncio
    async def test_caught_up_indexer_uses_base_interval(self, registry, session_factory):
        """Should back off to the base interval once at the head."""
        now = [0.0]
        chain = FakeChain(registry, head=100)
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(Recorder())], clock=lambda: now[0])

        await indexer.tick()

        assert indexer.next_run_at == 45
        assert chain.backpressure == []

    @pytest.mark.asyncio
    async def test_head_behind_cursor_records_anomaly(self, registry, session_factory):
        """Should record an anomaly when the provider reports a head far behind the cursor."""
        chain = FakeChain(registry, head=100)
        indexer = IndexerCore(chain, registry, session_factory, [pool_stream(Recorder())])
        await indexer.tick()

        chain.head = 50
        result = await indexer.tick()

        assert result.windows == []
        with session_scope(session_factory) as db:
            assert len(AnomalyRepository(db).find_by_kind("head_behind_cursor")) == 1


class TestJsonable:
    """Raw event argument serialisation."""

    def test_converts_bytes_tuples_and_big_ints(self):
        """Should make decoded args JSON-safe."""
        value = {"a": b"\x01\x02", "b": (1, 2 ** 200), "c": True, "d": 5}
        assert jsonable(value) == {"a": "0x0102", "b": [1, str(2 ** 200)], "c": True, "d": 5}
