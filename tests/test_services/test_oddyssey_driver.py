"""Unit tests for the Oddyssey daily cycle driver.

Test Strategy:
1. Test slot resolution (finished, cancelled with grace, pending)
2. Test opening a cycle records it once, including cycles already open on-chain
3. Test resolution waits for every fixture, then sends resolveDailyCycle once
4. Test chain-side resolutions are mirrored instead of resent
5. Test revert handling (fatal, parked, lost race)

Each test follows the pattern:
- Given: Selected matches / a cycle and results in the DB, a FakeChain and a mocked sender
- When: start_cycle() / resolve_cycle() / resolve_due() runs
- Then: The returned outcome, the cycle row and the sent transaction match
"""
from datetime import date, datetime, timedelta
from unittest.mock import AsyncMock

import pytest

from conftest import (
    BOT_ADDRESS,
    EVENT_START,
    FakeChain,
    create_cycle,
    create_daily_match,
    create_fixture,
    create_result,
    cycle_matches,
    make_log,
    make_receipt,
    seed,
)
from marketsync.chain.abi import (
    MONEYLINE_AWAY_WIN,
    MONEYLINE_HOME_WIN,
    NOT_APPLICABLE_RESULT,
    OVER_UNDER_OVER,
    OVER_UNDER_UNDER,
)
from marketsync.chain.contracts import datetime_to_unix, unix_to_datetime
from marketsync.core.database import session_scope
from marketsync.core.errors import ContractRevert, FatalServiceError, InsufficientFixtures
from marketsync.models import CycleState, DailyGameMatch, OddysseyCycle
from marketsync.repositories import CurrentCycleRepository
from marketsync.services.match_selector import MatchSelector
from marketsync.services.oddyssey_driver import (
    ALREADY_RESOLVED,
    PARKED,
    RESOLVED,
    WAITING,
    OddysseyDriver,
    resolve_slot,
)

GAME_DATE = date(2025, 10, 10)
TX_HASH = "0x" + "7c" * 32
AFTER_END = datetime(2025, 10, 10, 0, 0)
GRACE = timedelta(hours=2)
FIXTURES = [str(1000 + i) for i in range(10)]


def mock_sender(receipt=None, **kwargs) -> AsyncMock:
    sender = AsyncMock()
    sender.address = BOT_ADDRESS
    sender.send.return_value = receipt or make_receipt(TX_HASH)
    for name, value in kwargs.items():
        setattr(sender.send, name, value)
    return sender


def cycle_info(start=0, end=0, prize_pool=0, state=1):
    return (start, end, prize_pool, 0, 0, state, False)


def driver_for(chain, registry, sender, session_factory):
    return OddysseyDriver(chain, registry, sender, session_factory, MatchSelector())


def seed_selection(session_factory, count=10):
    fixtures = [
        create_fixture(f"50{i}", datetime(2025, 10, 10, 12, 0) + timedelta(minutes=15 * i))
        for i in range(count)
    ]
    matches = [create_daily_match(GAME_DATE, order, fixture) for order, fixture in enumerate(fixtures, start=1)]
    seed(session_factory, *fixtures, *matches)


def load_cycle(session_factory, cycle_id):
    with session_scope(session_factory) as db:
        cycle = db.get(OddysseyCycle, cycle_id)
        if cycle is not None:
            db.expunge(cycle)
        return cycle


class TestResolveSlot:
    """Per-slot contract results."""

    def test_finished_fixture_scored_from_scores(self):
        match = cycle_matches(count=1)[0]

        slot = resolve_slot(match, create_result(match.fixture_id, 2, 1), AFTER_END, GRACE)

        assert slot.result.to_chain_tuple() == (MONEYLINE_HOME_WIN, OVER_UNDER_OVER)
        assert (slot.result.home_score, slot.result.away_score) == (2, 1)

    def test_away_win_under(self):
        match = cycle_matches(count=1)[0]

        slot = resolve_slot(match, create_result(match.fixture_id, 0, 1), AFTER_END, GRACE)

        assert slot.result.to_chain_tuple() == (MONEYLINE_AWAY_WIN, OVER_UNDER_UNDER)

    def test_cancelled_waits_for_grace_then_is_not_applicable(self):
        """Should only give up on a cancelled fixture once the grace period has passed."""
        match = cycle_matches(count=1)[0]
        kickoff = unix_to_datetime(match.start_time)
        cancelled = create_result(match.fixture_id, None, None, status="cancelled")

        early = resolve_slot(match, cancelled, kickoff + timedelta(hours=1), GRACE)
        late = resolve_slot(match, cancelled, kickoff + GRACE, GRACE)

        assert early.result is None
        assert late.result.to_chain_tuple() == NOT_APPLICABLE_RESULT

    def test_still_postponed_after_grace_is_not_applicable(self):
        """Should not wait forever on a fixture the provider keeps postponed."""
        match = cycle_matches(count=1)[0]
        kickoff = unix_to_datetime(match.start_time)
        postponed = create_result(match.fixture_id, None, None, status="postponed", finished_at=None)

        early = resolve_slot(match, postponed, kickoff + timedelta(minutes=30), GRACE)
        late = resolve_slot(match, postponed, kickoff + GRACE + timedelta(minutes=1), GRACE)

        assert early.result is None
        assert early.reason.startswith("postponed")
        assert late.result.to_chain_tuple() == NOT_APPLICABLE_RESULT
        assert late.result.status == "postponed"

    def test_missing_or_unfinished_result_is_pending(self):
        match = cycle_matches(count=1)[0]

        assert resolve_slot(match, None, AFTER_END, GRACE).result is None
        assert resolve_slot(match, create_result(match.fixture_id, None, None), AFTER_END, GRACE).result is None


class TestDayState:
    """Where a game date sits in the cycle lifecycle."""

    def test_idle_then_preparing_then_active(self, registry, session_factory):
        driver = driver_for(FakeChain(registry), registry, mock_sender(), session_factory)
        assert driver.day_state(GAME_DATE) == CycleState.IDLE

        seed_selection(session_factory)
        assert driver.day_state(GAME_DATE) == CycleState.PREPARING_CYCLE

        seed(session_factory, create_cycle(4, game_date=GAME_DATE, cycle_end_time=datetime(2025, 10, 10, 23, 0)))
        assert driver.day_state(GAME_DATE, now=datetime(2025, 10, 10, 12, 0)) == CycleState.ACTIVE
        assert driver.day_state(GAME_DATE, now=datetime(2025, 10, 10, 23, 0)) == CycleState.ENDED


class TestSelectMatches:
    """Selection is skipped once the day has a cycle."""

    def test_selects_for_a_new_day(self, registry, session_factory):
        seed(session_factory, *[
            create_fixture(f"60{i}", datetime(2025, 10, 10, 14, 0) + timedelta(minutes=i))
            for i in range(12)
        ])
        driver = driver_for(FakeChain(registry), registry, mock_sender(), session_factory)

        assert driver.select_matches(GAME_DATE) == 10

    def test_existing_cycle_skips_selection(self, registry, session_factory):
        seed(session_factory, create_cycle(4, game_date=GAME_DATE))
        driver = driver_for(FakeChain(registry), registry, mock_sender(), session_factory)

        assert driver.select_matches(GAME_DATE) == 0


class TestStartCycle:
    """startDailyCycle."""

    # Happy Path Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_opens_cycle_and_records_it(self, registry, session_factory):
        """Should send the ten matches and mirror the cycle from CycleStarted."""
        seed_selection(session_factory)
        seed(session_factory, create_cycle(4, game_date=date(2025, 10, 9)))
        end_time = datetime_to_unix(datetime(2025, 10, 10, 11, 0))
        started = make_log(registry, "Oddyssey", "CycleStarted", {"cycleId": 5, "endTime": end_time}, block=500)
        sender = mock_sender(make_receipt(TX_HASH, logs=[started]))
        chain = FakeChain(registry).returns("Oddyssey", "getCurrentCycle", 4).on(
            "Oddyssey", "cycleInfo",
            lambda cycle_id: cycle_info(start=datetime_to_unix(datetime(2025, 10, 9, 0, 10))),
        )
        now = datetime(2025, 10, 10, 0, 10)

        cycle_id = await driver_for(chain, registry, sender, session_factory).start_cycle(GAME_DATE, now)

        assert cycle_id == 5
        contract, fn, matches = sender.send.await_args.args
        assert (contract, fn) == ("Oddyssey", "startDailyCycle")
        assert [match[0] for match in matches] == [500 + i for i in range(10)]
        cycle = load_cycle(session_factory, 5)
        assert cycle.state == "Active"
        assert cycle.game_date == GAME_DATE
        assert cycle.matches_count == 10
        assert cycle.tx_hash == TX_HASH
        assert cycle.cycle_end_time == datetime(2025, 10, 10, 11, 0)
        assert load_cycle(session_factory, 4).state == "Ended"
        with session_scope(session_factory) as db:
            assert {row.cycle_id for row in db.query(DailyGameMatch).all()} == {5}
            assert CurrentCycleRepository(db).get() == 5

    @pytest.mark.asyncio
    async def test_existing_cycle_is_not_reopened(self, registry, session_factory):
        seed_selection(session_factory)
        seed(session_factory, create_cycle(5, game_date=GAME_DATE))
        sender = mock_sender()

        assert await driver_for(FakeChain(registry), registry, sender, session_factory).start_cycle(GAME_DATE) is None
        sender.send.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cycle_already_open_on_chain_is_recorded(self, registry, session_factory):
        """Should mirror a cycle opened before a restart instead of opening another."""
        seed_selection(session_factory)
        chain = FakeChain(registry).returns("Oddyssey", "getCurrentCycle", 7).on(
            "Oddyssey", "cycleInfo",
            lambda cycle_id: cycle_info(
                start=datetime_to_unix(datetime(2025, 10, 10, 0, 10)),
                end=datetime_to_unix(datetime(2025, 10, 10, 11, 0)),
            ),
        )
        sender = mock_sender()

        cycle_id = await driver_for(chain, registry, sender, session_factory).start_cycle(GAME_DATE)

        assert cycle_id == 7
        sender.send.assert_not_awaited()
        cycle = load_cycle(session_factory, 7)
        assert cycle.tx_hash is None
        assert cycle.state == "Active"

    # Failure Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_incomplete_selection_raises(self, registry, session_factory):
        seed_selection(session_factory, count=9)
        driver = driver_for(FakeChain(registry), registry, mock_sender(), session_factory)

        with pytest.raises(InsufficientFixtures):
            await driver.start_cycle(GAME_DATE)

    @pytest.mark.asyncio
    async def test_unauthorized_is_fatal(self, registry, session_factory):
        seed_selection(session_factory)
        chain = FakeChain(registry).returns("Oddyssey", "getCurrentCycle", 0)
        sender = mock_sender(side_effect=ContractRevert("execution reverted: Only oracle"))

        with pytest.raises(FatalServiceError):
            await driver_for(chain, registry, sender, session_factory).start_cycle(GAME_DATE)

        assert load_cycle(session_factory, 1) is None


class TestResolveCycle:
    """resolveDailyCycle."""

    # Happy Path Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_resolves_once_every_fixture_is_final(self, registry, session_factory):
        """Should send ten results and mark the cycle Resolved with its tx."""
        seed(session_factory, create_cycle(1))
        seed(session_factory, *[create_result(fixture_id, 2, 1) for fixture_id in FIXTURES])
        chain = FakeChain(registry).on("Oddyssey", "cycleInfo", lambda cycle_id: cycle_info(state=2))
        sender = mock_sender()

        outcome = await driver_for(chain, registry, sender, session_factory).resolve_cycle(1, AFTER_END)

        assert outcome == RESOLVED
        sender.send.assert_awaited_once_with(
            "Oddyssey", "resolveDailyCycle", 1, [(MONEYLINE_HOME_WIN, OVER_UNDER_OVER)] * 10
        )
        cycle = load_cycle(session_factory, 1)
        assert cycle.state == "Resolved"
        assert cycle.is_resolved
        assert cycle.resolution_tx_hash == TX_HASH
        assert cycle.ready_for_resolution
        assert len(cycle.resolution_data) == 10

    @pytest.mark.asyncio
    async def test_waits_for_pending_fixture(self, registry, session_factory):
        """Should end the cycle locally but send nothing while a fixture is pending."""
        seed(session_factory, create_cycle(1))
        seed(session_factory, *[create_result(fixture_id, 2, 1) for fixture_id in FIXTURES[:9]])
        chain = FakeChain(registry).on("Oddyssey", "cycleInfo", lambda cycle_id: cycle_info(state=2))
        sender = mock_sender()

        outcome = await driver_for(chain, registry, sender, session_factory).resolve_cycle(1, AFTER_END)

        assert outcome == WAITING
        sender.send.assert_not_awaited()
        cycle = load_cycle(session_factory, 1)
        assert cycle.state == "Ended"
        assert not cycle.ready_for_resolution

    @pytest.mark.asyncio
    async def test_cancelled_fixture_resolves_as_not_applicable(self, registry, session_factory):
        seed(session_factory, create_cycle(1))
        seed(session_factory, *[create_result(fixture_id, 2, 1) for fixture_id in FIXTURES[1:]])
        seed(session_factory, create_result(FIXTURES[0], None, None, status="cancelled"))
        chain = FakeChain(registry).on("Oddyssey", "cycleInfo", lambda cycle_id: cycle_info(state=2))
        sender = mock_sender()

        await driver_for(chain, registry, sender, session_factory).resolve_cycle(1, AFTER_END)

        results = sender.send.await_args.args[3]
        assert results[0] == NOT_APPLICABLE_RESULT
        assert results[1] == (MONEYLINE_HOME_WIN, OVER_UNDER_OVER)

    # Chain State Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_already_resolved_on_chain_waits_for_the_log(self, registry, session_factory):
        """Should record the prize pool but leave Resolved to CycleResolved, which carries the tx hash."""
        seed(session_factory, create_cycle(1))
        chain = FakeChain(registry).on(
            "Oddyssey", "cycleInfo", lambda cycle_id: cycle_info(prize_pool=10**18, state=3)
        )
        sender = mock_sender()

        outcome = await driver_for(chain, registry, sender, session_factory).resolve_cycle(1, AFTER_END)

        assert outcome == ALREADY_RESOLVED
        sender.send.assert_not_awaited()
        cycle = load_cycle(session_factory, 1)
        assert cycle.state == "Ended"
        assert cycle.prize_pool == 10**18
        assert (cycle.is_resolved, cycle.resolution_tx_hash) == (False, None)

    @pytest.mark.asyncio
    async def test_revert_after_lost_race_is_already_resolved(self, registry, session_factory):
        """Should re-read the chain after a revert and accept another resolver's result."""
        seed(session_factory, create_cycle(1))
        seed(session_factory, *[create_result(fixture_id, 2, 1) for fixture_id in FIXTURES])
        reads = []

        def info(cycle_id):
            reads.append(cycle_id)
            return cycle_info(state=3 if len(reads) > 1 else 2)

        chain = FakeChain(registry).on("Oddyssey", "cycleInfo", info)
        sender = mock_sender(side_effect=ContractRevert("execution reverted: Cycle already resolved"))

        outcome = await driver_for(chain, registry, sender, session_factory).resolve_cycle(1, AFTER_END)

        assert outcome == ALREADY_RESOLVED
        assert len(reads) == 2

    @pytest.mark.asyncio
    async def test_other_revert_is_parked(self, registry, session_factory):
        seed(session_factory, create_cycle(1))
        seed(session_factory, *[create_result(fixture_id, 2, 1) for fixture_id in FIXTURES])
        chain = FakeChain(registry).on("Oddyssey", "cycleInfo", lambda cycle_id: cycle_info(state=2))
        sender = mock_sender(side_effect=ContractRevert("execution reverted: Betting period not over"))

        outcome = await driver_for(chain, registry, sender, session_factory).resolve_cycle(1, AFTER_END)

        assert outcome == PARKED
        assert not load_cycle(session_factory, 1).is_resolved

    @pytest.mark.asyncio
    async def test_resolve_due_skips_open_cycles(self, registry, session_factory):
        """Should only attempt cycles whose end time has passed."""
        seed(session_factory, create_cycle(1, state="Ended"))
        seed(session_factory, create_cycle(2, game_date=GAME_DATE, cycle_end_time=datetime(2025, 10, 10, 11, 0)))
        chain = FakeChain(registry).on("Oddyssey", "cycleInfo", lambda cycle_id: cycle_info(state=3))

        outcomes = await driver_for(chain, registry, mock_sender(), session_factory).resolve_due(AFTER_END)

        assert outcomes == {1: ALREADY_RESOLVED}
        assert chain.calls_to("cycleInfo") == [(1,)]
