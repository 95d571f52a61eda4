"""
Oddyssey cycle driver.

Runs the daily cycle: select the fixtures (00:05 UTC), open the cycle
on-chain (00:10 UTC), and once betting has closed and every fixture has a
terminal result, resolve it with `resolveDailyCycle`. Slip evaluation runs
afterwards in the slip evaluator.

The chain is checked before every write so a restart never opens or
resolves a cycle twice.
"""
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from marketsync.chain.abi import (
    CYCLE_STATE_NAMES,
    MONEYLINE_AWAY_WIN,
    MONEYLINE_DRAW,
    MONEYLINE_HOME_WIN,
    NOT_APPLICABLE_RESULT,
    OVER_UNDER_OVER,
    OVER_UNDER_UNDER,
)
from marketsync.chain.contracts import ContractRegistry, to_hex, unix_to_datetime
from marketsync.chain.transactions import TransactionSender
from marketsync.core.database import session_scope
from marketsync.core.errors import (
    REVERT_INSUFFICIENT_FUNDS,
    ContractRevert,
    FatalServiceError,
    InsufficientFixtures,
    OperatorAlert,
    TransactionFailed,
)
from marketsync.core.logging import get_logger
from marketsync.models import CycleState, FixtureResult
from marketsync.models.schemas import (
    CycleMatch,
    CycleResult,
    dump_cycle_matches,
    dump_cycle_results,
    parse_cycle_matches,
)
from marketsync.repositories import (
    CurrentCycleRepository,
    CycleRepository,
    DailyMatchRepository,
    FixtureResultRepository,
)
from marketsync.services.match_selector import MatchSelector, to_cycle_matches
from marketsync.services.outcomes import outcome_1x2, outcome_over_under

logger = get_logger(__name__)

_MONEYLINE = {"1": MONEYLINE_HOME_WIN, "X": MONEYLINE_DRAW, "2": MONEYLINE_AWAY_WIN}

# resolve_cycle outcomes
RESOLVED = "resolved"
ALREADY_RESOLVED = "already_resolved"
WAITING = "waiting"
PARKED = "parked"
FAILED = "failed"


@dataclass(frozen=True)
class SlotResolution:
    """Result for one slot, or None while the fixture is not yet terminal."""
    result: Optional[CycleResult]
    reason: str = ""


def resolve_slot(
    match: CycleMatch,
    result: Optional[FixtureResult],
    now: datetime,
    cancelled_grace: timedelta,
) -> SlotResolution:
    """
    Contract result for one cycle slot.

    Finished fixtures are scored from their scores, never from cached
    outcome strings. A cancelled fixture, or one still postponed, becomes
    NotApplicable once the grace period after its scheduled kick-off has passed.
    """
    if result is None:
        return SlotResolution(None, "no result yet")

    if result.status == "finished":
        if result.home_score is None or result.away_score is None:
            return SlotResolution(None, "finished without scores")
        home, away = result.home_score, result.away_score
        over_under = OVER_UNDER_OVER if outcome_over_under(home, away) == "Over" else OVER_UNDER_UNDER
        return SlotResolution(CycleResult(
            fixture_id=match.fixture_id,
            moneyline=_MONEYLINE[outcome_1x2(home, away)],
            over_under=over_under,
            status=result.status,
            home_score=home,
            away_score=away,
        ))

    if result.status in ("cancelled", "postponed"):
        kickoff = unix_to_datetime(match.start_time)
        if now < kickoff + cancelled_grace:
            return SlotResolution(None, f"{result.status}, waiting until {kickoff + cancelled_grace}")
        moneyline, over_under = NOT_APPLICABLE_RESULT
        return SlotResolution(CycleResult(
            fixture_id=match.fixture_id,
            moneyline=moneyline,
            over_under=over_under,
            status=result.status,
        ))

    return SlotResolution(None, f"status {result.status}")


class OddysseyDriver:
    """Daily cycle state machine."""

    def __init__(
        self,
        gateway,
        registry: ContractRegistry,
        sender: TransactionSender,
        session_factory: sessionmaker,
        selector: MatchSelector,
        cancelled_grace_hours: int = 2,
    ):
        self.gateway = gateway
        self.registry = registry
        self.sender = sender
        self.session_factory = session_factory
        self.selector = selector
        self.cancelled_grace = timedelta(hours=cancelled_grace_hours)

    async def _read(self, fn: str, *args):
        return await self.registry.read(self.gateway, "Oddyssey", fn, *args)

    def day_state(self, game_date: date, now: Optional[datetime] = None) -> CycleState:
        """Where the given day is in the cycle state machine."""
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            cycle = CycleRepository(db).find_by_game_date(game_date)
            if cycle is None:
                selected = DailyMatchRepository(db).find_by_date(game_date)
                if len(selected) == self.selector.match_count:
                    return CycleState.PREPARING_CYCLE
                return CycleState.IDLE
            state = CycleState(cycle.state)
            if state == CycleState.ACTIVE and cycle.cycle_end_time and now >= cycle.cycle_end_time:
                return CycleState.ENDED
            return state

    # ========================================================================
    # Selection and opening
    # ========================================================================

    def select_matches(self, game_date: date) -> int:
        """
        Persist the day's fixtures unless a cycle already exists for the date.

        Raises:
            InsufficientFixtures: Not enough eligible fixtures; no cycle today
        """
        with session_scope(self.session_factory) as db:
            if CycleRepository(db).find_by_game_date(game_date) is not None:
                logger.info(f"✅ Cycle for {game_date} already exists; skipping selection")
                return 0
            rows = self.selector.select(db, game_date)
            return len(rows)

    async def start_cycle(self, game_date: date, now: Optional[datetime] = None) -> Optional[int]:
        """
        Open the day's cycle on-chain with the selected fixtures.

        Returns:
            The new cycle id, or None when the day already has a cycle

        Raises:
            InsufficientFixtures: The day has no complete selection
            FatalServiceError / OperatorAlert: The bot cannot send the transaction
        """
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            existing = CycleRepository(db).find_by_game_date(game_date)
            if existing is not None:
                logger.info(f"✅ Cycle {existing.cycle_id} already open for {game_date}")
                return None
            rows = DailyMatchRepository(db).find_by_date(game_date)
            matches = to_cycle_matches(rows)

        if len(matches) != self.selector.match_count:
            raise InsufficientFixtures(len(matches), self.selector.match_count)

        opened = await self._opened_on_chain(game_date)
        if opened is not None:
            cycle_id, end_time = opened
            self._record_open(game_date, cycle_id, matches, now, end_time, None)
            logger.warning(f"⚠️ Cycle {cycle_id} for {game_date} was already open on-chain; recorded it")
            return cycle_id

        logger.info(f"📅 Opening Oddyssey cycle for {game_date} with {len(matches)} matches")
        try:
            receipt = await self.sender.send(
                "Oddyssey", "startDailyCycle", [match.to_chain_tuple() for match in matches]
            )
        except ContractRevert as exc:
            self._escalate("startDailyCycle", exc)
            logger.warning(f"⚠️ startDailyCycle for {game_date} reverted ({exc.kind}): {exc}")
            return None

        tx_hash = to_hex(receipt["transactionHash"])
        started = self.registry.decode_receipt_events(receipt, "Oddyssey", "CycleStarted")
        if started:
            cycle_id = int(started[0].args["cycleId"])
            end_time = unix_to_datetime(started[0].args["endTime"])
        else:
            cycle_id = int(await self._read("getCurrentCycle"))
            info = await self._read("cycleInfo", cycle_id)
            end_time = unix_to_datetime(info["endTime"])

        self._record_open(game_date, cycle_id, matches, now, end_time, tx_hash)
        logger.info(f"✅ Cycle {cycle_id} open until {end_time} (tx {tx_hash})")
        return cycle_id

    async def _opened_on_chain(self, game_date: date) -> Optional[tuple]:
        """(cycle_id, end_time) when the contract's current cycle started on `game_date`."""
        current = int(await self._read("getCurrentCycle"))
        if current == 0:
            return None
        info = await self._read("cycleInfo", current)
        if not info["startTime"] or unix_to_datetime(info["startTime"]).date() != game_date:
            return None
        return current, unix_to_datetime(info["endTime"])

    def _record_open(
        self,
        game_date: date,
        cycle_id: int,
        matches: List[CycleMatch],
        now: datetime,
        end_time: datetime,
        tx_hash: Optional[str],
    ) -> None:
        with session_scope(self.session_factory) as db:
            CycleRepository(db).upsert(
                cycle_id,
                state=CycleState.ACTIVE.value,
                game_date=game_date,
                matches_data=dump_cycle_matches(matches),
                matches_count=len(matches),
                cycle_start_time=now,
                cycle_end_time=end_time,
                tx_hash=tx_hash,
            )
            DailyMatchRepository(db).assign_cycle(game_date, cycle_id)
            CurrentCycleRepository(db).set(cycle_id)

    # ========================================================================
    # Resolution
    # ========================================================================

    async def resolve_due(self, now: Optional[datetime] = None) -> dict:
        """Try to resolve every cycle whose betting window has closed."""
        now = now or datetime.utcnow()
        with session_scope(self.session_factory) as db:
            cycle_ids = [cycle.cycle_id for cycle in CycleRepository(db).find_unresolved_ended(now)]

        outcomes = {}
        for cycle_id in cycle_ids:
            outcomes[cycle_id] = await self.resolve_cycle(cycle_id, now)
        return outcomes

    def prepare_results(self, cycle_id: int, now: datetime) -> Optional[List[CycleResult]]:
        """
        The ten slot results, or None while any fixture is still pending.

        A complete set is stored on the cycle as its resolution payload.
        """
        with session_scope(self.session_factory) as db:
            cycles = CycleRepository(db)
            cycle = cycles.find_by_id(cycle_id)
            if cycle is None:
                logger.warning(f"⚠️ Cycle {cycle_id} is not mirrored; cannot resolve")
                return None
            matches = parse_cycle_matches(cycle.matches_data)
            if len(matches) != self.selector.match_count:
                logger.error(f"❌ Cycle {cycle_id} has {len(matches)} matches; cannot resolve")
                return None

            results = FixtureResultRepository(db).find_many([m.fixture_id for m in matches])
            slots = [resolve_slot(m, results.get(m.fixture_id), now, self.cancelled_grace) for m in matches]
            pending = [(m.fixture_id, s.reason) for m, s in zip(matches, slots) if s.result is None]

            if cycle.state == CycleState.ACTIVE.value:
                cycles.upsert(cycle_id, state=CycleState.ENDED.value)
            if pending:
                logger.info(f"Cycle {cycle_id} waiting on {len(pending)} fixtures: {pending}")
                return None

            prepared = [slot.result for slot in slots]
            cycles.upsert(
                cycle_id,
                resolution_data=dump_cycle_results(prepared),
                ready_for_resolution=True,
                resolution_prepared_at=now,
            )
            return prepared

    async def resolve_cycle(self, cycle_id: int, now: Optional[datetime] = None) -> str:
        """
        Resolve one ended cycle on-chain.

        Raises:
            FatalServiceError / OperatorAlert: The bot cannot send the transaction
        """
        now = now or datetime.utcnow()
        if await self._resolved_on_chain(cycle_id):
            return ALREADY_RESOLVED

        prepared = self.prepare_results(cycle_id, now)
        if prepared is None:
            return WAITING

        logger.info(f"📅 Resolving cycle {cycle_id}")
        try:
            receipt = await self.sender.send(
                "Oddyssey", "resolveDailyCycle", cycle_id, [slot.to_chain_tuple() for slot in prepared]
            )
        except ContractRevert as exc:
            self._escalate("resolveDailyCycle", exc)
            if await self._resolved_on_chain(cycle_id):
                return ALREADY_RESOLVED
            logger.warning(f"⚠️ resolveDailyCycle({cycle_id}) parked ({exc.kind}): {exc}")
            return PARKED
        except TransactionFailed as exc:
            logger.error(f"❌ resolveDailyCycle({cycle_id}) failed on-chain: {exc}")
            return FAILED

        tx_hash = to_hex(receipt["transactionHash"])
        with session_scope(self.session_factory) as db:
            cycles = CycleRepository(db)
            cycle = cycles.find_by_id(cycle_id)
            cycles.upsert(
                cycle_id,
                state=CycleState.RESOLVED.value if cycle.state != CycleState.LEADERBOARD_FROZEN.value else cycle.state,
                is_resolved=True,
                resolution_tx_hash=cycle.resolution_tx_hash or tx_hash,
                resolved_at=cycle.resolved_at or datetime.utcnow(),
            )
        logger.info(f"✅ Cycle {cycle_id} resolved (tx {tx_hash})")
        return RESOLVED

    async def _resolved_on_chain(self, cycle_id: int) -> bool:
        """
        Check for a chain-side resolution the indexer has not delivered yet.

        The cycle stays Ended until CycleResolved is indexed, since only that
        log carries the resolution tx hash.
        """
        info = await self._read("cycleInfo", cycle_id)
        if CYCLE_STATE_NAMES.get(int(info["state"])) != CycleState.RESOLVED.value:
            return False
        with session_scope(self.session_factory) as db:
            cycles = CycleRepository(db)
            cycle = cycles.find_by_id(cycle_id)
            if cycle is not None and cycle.state not in (CycleState.RESOLVED.value, CycleState.LEADERBOARD_FROZEN.value):
                cycles.upsert(cycle_id, state=CycleState.ENDED.value, prize_pool=int(info["prizePool"]))
        logger.info(f"✅ Cycle {cycle_id} is already resolved on-chain")
        return True

    def _escalate(self, fn: str, exc: ContractRevert) -> None:
        if exc.kind == REVERT_INSUFFICIENT_FUNDS:
            raise OperatorAlert(f"Oracle bot {self.sender.address} cannot pay for {fn}: {exc}") from exc
        if exc.fatal:
            raise FatalServiceError(f"{fn} rejected: {exc}") from exc
