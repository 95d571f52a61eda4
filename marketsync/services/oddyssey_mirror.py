"""
Oddyssey mirror.

Handlers for the Oddyssey contract stream: cycles, slips, on-chain
evaluations and prize claims. Slips are read back in full with
`getSlip(id)` because SlipPlaced only carries ids.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session, sessionmaker

from marketsync.chain.abi import CYCLE_STATE_NAMES
from marketsync.chain.contracts import ContractRegistry, DecodedEvent, normalize_address, unix_to_datetime
from marketsync.core.database import session_scope
from marketsync.core.logging import get_logger
from marketsync.models import CycleState, OddysseyCycle, Slip
from marketsync.models.schemas import (
    CycleMatch,
    dump_cycle_matches,
    dump_predictions,
    prediction_from_chain,
)
from marketsync.repositories import (
    AnomalyRepository,
    CurrentCycleRepository,
    CycleRepository,
    SlipRepository,
)

logger = get_logger(__name__)


def matches_from_chain(raw_matches) -> List[CycleMatch]:
    """CycleMatch list from a decoded `getDailyMatches` array."""
    matches = []
    for raw in raw_matches:
        match_id, start_time, home, draw, away, over, under, _result = raw
        matches.append(CycleMatch(
            fixture_id=str(match_id),
            start_time=int(start_time),
            odds_home=int(home),
            odds_draw=int(draw),
            odds_away=int(away),
            odds_over=int(over),
            odds_under=int(under),
        ))
    return matches


class OddysseyMirror:
    """Event handlers for the Oddyssey stream."""

    def __init__(self, gateway, registry: ContractRegistry):
        self.gateway = gateway
        self.registry = registry

    def handlers(self) -> Dict[str, Any]:
        return {
            "CycleStarted": self.on_cycle_started,
            "CycleResolved": self.on_cycle_resolved,
            "SlipPlaced": self.on_slip_placed,
            "SlipEvaluated": self.on_slip_evaluated,
            "PrizeClaimed": self.on_prize_claimed,
        }

    async def _read(self, fn: str, *args: Any) -> Any:
        return await self.registry.read(self.gateway, "Oddyssey", fn, *args)

    async def load_cycle(self, db: Session, cycle_id: int) -> OddysseyCycle:
        """
        Create or refresh a cycle row from `cycleInfo` and `getDailyMatches`.

        A chain-side Resolved cycle whose resolution tx is unknown keeps
        is_resolved unset; the resolution tx is filled in by CycleResolved.
        """
        info = await self._read("cycleInfo", cycle_id)
        try:
            matches = matches_from_chain(await self._read("getDailyMatches", cycle_id))
        except ValidationError as exc:
            logger.warning(f"⚠️ Cycle {cycle_id} matches did not decode: {exc}")
            matches = []

        start = unix_to_datetime(info["startTime"]) if info["startTime"] else None
        values = {
            "state": CYCLE_STATE_NAMES.get(int(info["state"]), CycleState.NOT_STARTED.value),
            "cycle_start_time": start,
            "cycle_end_time": unix_to_datetime(info["endTime"]) if info["endTime"] else None,
            "prize_pool": int(info["prizePool"]),
            "game_date": start.date() if start else None,
        }
        if matches:
            values["matches_data"] = dump_cycle_matches(matches)
            values["matches_count"] = len(matches)

        cycles = CycleRepository(db)
        existing = cycles.find_by_id(cycle_id)
        if existing is not None and existing.state in (CycleState.RESOLVED.value, CycleState.LEADERBOARD_FROZEN.value):
            values.pop("state")
        return cycles.upsert(cycle_id, **values)

    # ========================================================================
    # Cycle handlers
    # ========================================================================

    async def on_cycle_started(self, db: Session, event: DecodedEvent) -> None:
        cycle_id = int(event.args["cycleId"])
        cycles = CycleRepository(db)
        cycle = cycles.find_by_id(cycle_id)
        if cycle is None:
            cycle = await self.load_cycle(db, cycle_id)
        cycle = cycles.upsert(
            cycle_id,
            state=CycleState.ACTIVE.value,
            cycle_end_time=unix_to_datetime(event.args["endTime"]),
            tx_hash=cycle.tx_hash or event.transaction_hash,
        )
        CurrentCycleRepository(db).set(cycle_id)
        logger.info(f"✅ Cycle {cycle_id} started, betting closes {cycle.cycle_end_time}")

    async def on_cycle_resolved(self, db: Session, event: DecodedEvent) -> None:
        cycle_id = int(event.args["cycleId"])
        cycles = CycleRepository(db)
        cycle = cycles.find_by_id(cycle_id)
        if cycle is None:
            cycle = await self.load_cycle(db, cycle_id)

        state = cycle.state
        if state != CycleState.LEADERBOARD_FROZEN.value:
            state = CycleState.RESOLVED.value
        cycles.upsert(
            cycle_id,
            state=state,
            is_resolved=True,
            resolution_tx_hash=cycle.resolution_tx_hash or event.transaction_hash,
            resolved_at=cycle.resolved_at or datetime.utcnow(),
            prize_pool=int(event.args["prizePool"]),
        )
        logger.info(f"✅ Cycle {cycle_id} resolved on-chain (prize pool {event.args['prizePool']})")

    # ========================================================================
    # Slip handlers
    # ========================================================================

    async def on_slip_placed(self, db: Session, event: DecodedEvent) -> None:
        slip_id = int(event.args["slipId"])
        cycle_id = int(event.args["cycleId"])
        slips = SlipRepository(db)
        if slips.exists(slip_id):
            return

        raw = await self._read("getSlip", slip_id)
        player, _cycle, placed_at, raw_predictions, _score, _correct, _evaluated = raw

        if not CycleRepository(db).exists(cycle_id):
            await self.load_cycle(db, cycle_id)
            logger.warning(f"⚠️ Cycle {cycle_id} was not mirrored; loaded it for slip {slip_id}")

        try:
            predictions = [
                prediction_from_chain(int(p[0]), int(p[1]), p[2], int(p[3]))
                for p in raw_predictions
            ]
        except ValueError as exc:
            AnomalyRepository(db).record("malformed_slip", slip_id, str(exc))
            logger.error(f"❌ Slip {slip_id} predictions did not decode: {exc}")
            return

        slips.create(
            slip_id=slip_id,
            cycle_id=cycle_id,
            player=normalize_address(player or event.args["player"]),
            placed_at=unix_to_datetime(placed_at) if placed_at else datetime.utcnow(),
            predictions=dump_predictions(predictions),
            is_evaluated=False,
            correct_count=0,
            final_score=0,
            transaction_hash=event.transaction_hash,
            created_at=datetime.utcnow(),
        )
        logger.info(f"✅ Slip {slip_id} placed in cycle {cycle_id} by {normalize_address(player)}")

    async def on_slip_evaluated(self, db: Session, event: DecodedEvent) -> None:
        """
        Mirror an on-chain evaluation.

        A slip the off-chain evaluator already scored keeps its values; a
        disagreement is recorded as an anomaly.
        """
        slip_id = int(event.args["slipId"])
        slip = SlipRepository(db).find_by_id(slip_id)
        if slip is None:
            logger.warning(f"⚠️ SlipEvaluated for unknown slip {slip_id}")
            return

        correct = int(event.args["correctCount"])
        score = int(event.args["finalScore"])
        if slip.is_evaluated:
            if (slip.correct_count, slip.final_score) != (correct, score):
                AnomalyRepository(db).record(
                    "slip_score_mismatch",
                    slip_id,
                    f"off-chain ({slip.correct_count}, {slip.final_score}) vs on-chain ({correct}, {score})",
                )
                logger.warning(f"⚠️ Slip {slip_id} score differs from the on-chain evaluation")
            return

        slip.is_evaluated = True
        slip.correct_count = correct
        slip.final_score = score
        slip.evaluated_at = datetime.utcnow()
        db.flush()

    async def on_prize_claimed(self, db: Session, event: DecodedEvent) -> None:
        cycle_id = int(event.args["cycleId"])
        player = normalize_address(event.args["player"])
        # Contract ranks are 0-based, leaderboard ranks 1-based
        rank = int(event.args["rank"]) + 1

        slips = SlipRepository(db).find_player_slips(cycle_id, player)
        slip = next((s for s in slips if s.leaderboard_rank == rank), None)
        if slip is None:
            slip = next((s for s in slips if not s.prize_claimed), None)
        if slip is None:
            logger.warning(f"⚠️ PrizeClaimed by {player} in cycle {cycle_id} matches no slip")
            return

        slip.prize_claimed = True
        slip.prize_amount = int(event.args["amount"])
        db.flush()
        logger.info(f"✅ {player} claimed {event.args['amount']} for rank {rank} in cycle {cycle_id}")

    # ========================================================================
    # Cycle sync
    # ========================================================================

    async def sync_current_cycle(self, session_factory: sessionmaker) -> Optional[int]:
        """
        Compare the contract's current cycle with the mirror.

        Cycles the mirror is missing (1..current) are loaded from `cycleInfo`.

        Returns:
            The current cycle id, or None before the first cycle
        """
        current = int(await self._read("getCurrentCycle"))
        if current == 0:
            return None

        with session_scope(session_factory) as db:
            cycles = CycleRepository(db)
            missing = sorted(set(range(1, current + 1)) - cycles.existing_ids())
            for cycle_id in missing:
                if not await self._read("isCycleInitialized", cycle_id):
                    continue
                await self.load_cycle(db, cycle_id)
                AnomalyRepository(db).record("missing_cycle", cycle_id, "loaded from cycleInfo")
            CurrentCycleRepository(db).set(current)

        if missing:
            logger.warning(f"⚠️ Loaded {len(missing)} cycles missing from the mirror: {missing}")
        logger.info(f"✅ Current Oddyssey cycle is {current}")
        return current
