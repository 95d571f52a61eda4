"""
Slip evaluator.

Scores every slip of a resolved cycle against the fixtures' final scores,
ranks the cycle's leaderboard and awards reputation. Scores are integers:
a slip starts at the odds scaling factor (1000) and each correct pick
multiplies by its x1000 odd and divides by 1000; no correct picks scores 0.

Evaluation is a pure function of predictions and scores, so re-running a
cycle (e.g. after a corrected result) overwrites earlier values with the
same or corrected numbers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy.orm import sessionmaker

from marketsync.core.database import session_scope
from marketsync.core.logging import get_logger
from marketsync.models import SETTLED_CYCLE_STATES, CycleState, Slip
from marketsync.models.schemas import (
    MONEYLINE,
    OVER_UNDER,
    parse_cycle_matches,
    parse_cycle_results,
    parse_predictions,
)
from marketsync.repositories import (
    CycleRepository,
    FixtureResultRepository,
    ReputationRepository,
    SlipRepository,
)
from marketsync.services.outcomes import outcome_1x2, outcome_over_under

logger = get_logger(__name__)

ODDS_SCALING = 1000

# (minimum correct picks, points), highest first
REPUTATION_TIERS = ((8, 50), (6, 20), (5, 10))

Scores = Dict[str, Tuple[int, int]]  # fixture_id -> (home, away)


@dataclass
class EvaluationResult:
    cycle_id: int
    evaluated: int = 0
    ranked: int = 0
    reputation_awarded: int = 0
    skipped: bool = False


def is_correct(prediction, scores: Scores) -> bool:
    """Whether one pick matches the fixture's final score. Missing scores never match."""
    score = scores.get(prediction.fixture_id)
    if score is None:
        return False
    home, away = score
    if prediction.bet_type == MONEYLINE:
        return prediction.selection == outcome_1x2(home, away)
    if prediction.bet_type == OVER_UNDER:
        return prediction.selection == outcome_over_under(home, away, 2.5)
    return False


def score_slip(predictions: Iterable, scores: Scores, scaling: int = ODDS_SCALING) -> Tuple[int, int]:
    """
    (correct_count, final_score) for a slip.

    >>> score_slip([], {})
    (0, 0)
    """
    correct = 0
    score = scaling
    for prediction in predictions:
        if is_correct(prediction, scores):
            correct += 1
            score = score * prediction.selected_odd // scaling
    return correct, (score if correct else 0)


def reputation_points(correct_count: int) -> int:
    for minimum, points in REPUTATION_TIERS:
        if correct_count >= minimum:
            return points
    return 0


def leaderboard_key(slip: Slip):
    """final_score DESC, correct_count DESC, placed_at ASC (slip id breaks exact ties)."""
    return (-int(slip.final_score or 0), -int(slip.correct_count or 0), slip.placed_at, slip.slip_id)


class SlipEvaluator:
    """Evaluates slips and freezes the leaderboard of resolved cycles."""

    def __init__(self, session_factory: sessionmaker, leaderboard_size: int = 10, scaling: int = ODDS_SCALING):
        self.session_factory = session_factory
        self.leaderboard_size = leaderboard_size
        self.scaling = scaling

    def evaluate_pending(self) -> List[EvaluationResult]:
        """Evaluate every resolved cycle whose leaderboard is not frozen yet."""
        with session_scope(self.session_factory) as db:
            cycle_ids = [cycle.cycle_id for cycle in CycleRepository(db).find_resolved_unevaluated()]
        return [self.evaluate_cycle(cycle_id) for cycle_id in cycle_ids]

    def final_scores(self, db, cycle) -> Scores:
        """
        Final scores for the cycle's fixtures.

        Stored fixture results win over the scores captured in the
        resolution payload, so a corrected result is picked up on re-run.
        Cancelled fixtures have no score, and neither do slots the cycle was
        resolved with as not applicable, even if the fixture is played later.
        """
        scores: Scores = {}
        not_applicable = set()
        for slot in parse_cycle_results(cycle.resolution_data):
            if slot.home_score is not None and slot.away_score is not None:
                scores[slot.fixture_id] = (slot.home_score, slot.away_score)
            else:
                not_applicable.add(slot.fixture_id)

        fixture_ids = [match.fixture_id for match in parse_cycle_matches(cycle.matches_data)]
        for fixture_id, result in FixtureResultRepository(db).find_many(fixture_ids).items():
            if fixture_id in not_applicable:
                continue
            if result.status == "finished" and result.home_score is not None and result.away_score is not None:
                scores[fixture_id] = (result.home_score, result.away_score)
            elif result.status == "cancelled":
                scores.pop(fixture_id, None)
        return scores

    def evaluate_cycle(self, cycle_id: int, force: bool = False, now: Optional[datetime] = None) -> EvaluationResult:
        """
        Score, rank and freeze one cycle.

        Args:
            cycle_id: Cycle to evaluate
            force: Re-score slips that are already evaluated
        """
        now = now or datetime.utcnow()
        result = EvaluationResult(cycle_id=cycle_id)

        with session_scope(self.session_factory) as db:
            cycles = CycleRepository(db)
            cycle = cycles.find_by_id(cycle_id)
            if cycle is None or cycle.state not in SETTLED_CYCLE_STATES:
                logger.warning(f"⚠️ Cycle {cycle_id} is not resolved; skipping evaluation")
                result.skipped = True
                return result

            scores = self.final_scores(db, cycle)
            slips = SlipRepository(db)
            pending = slips.find_by_cycle(cycle_id) if force else slips.find_unevaluated(cycle_id)

            for slip in pending:
                correct, final = score_slip(parse_predictions(slip.predictions), scores, self.scaling)
                slip.correct_count = correct
                slip.final_score = final
                slip.is_evaluated = True
                slip.evaluated_at = now
                result.evaluated += 1
            db.flush()

            ranked = sorted(slips.find_evaluated(cycle_id), key=leaderboard_key)
            for rank, slip in enumerate(ranked, start=1):
                slip.leaderboard_rank = rank
                slip.prize_eligible = rank <= self.leaderboard_size
            result.ranked = len(ranked)

            reputation = ReputationRepository(db)
            for slip in ranked:
                points = reputation_points(slip.correct_count)
                if points and reputation.award_once(
                    slip.player, slip.slip_id, cycle_id, points, f"oddyssey_{slip.correct_count}_correct"
                ):
                    result.reputation_awarded += 1

            cycles.upsert(cycle_id, state=CycleState.LEADERBOARD_FROZEN.value, evaluated_at=now)

        logger.info(
            f"✅ Cycle {cycle_id} evaluated: {result.evaluated} slips scored, {result.ranked} ranked, "
            f"{result.reputation_awarded} reputation awards"
        )
        return result
