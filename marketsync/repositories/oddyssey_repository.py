"""
Repositories for the Oddyssey daily game: cycles, selected matches, slips and reputation.

Usage:
    cycles = CycleRepository(db)
    active = cycles.find_active()
    slips = SlipRepository(db).find_unevaluated(active.cycle_id)
"""
from datetime import date, datetime
from typing import List, Optional

from sqlalchemy import asc, desc

from marketsync.models import (
    SETTLED_CYCLE_STATES,
    CycleState,
    CurrentCycle,
    DailyGameMatch,
    OddysseyCycle,
    ReputationAction,
    Slip,
)
from marketsync.repositories.base import BaseRepository


class CycleRepository(BaseRepository[OddysseyCycle]):
    """Repository for Oddyssey cycles."""

    def __init__(self, db):
        super().__init__(OddysseyCycle, db)

    def find_active(self) -> Optional[OddysseyCycle]:
        return self.filter_by_first(state=CycleState.ACTIVE.value)

    def find_by_game_date(self, game_date: date) -> Optional[OddysseyCycle]:
        return self.db.query(OddysseyCycle).filter(
            OddysseyCycle.game_date == game_date
        ).order_by(desc(OddysseyCycle.cycle_id)).first()

    def upsert(self, cycle_id: int, **values) -> OddysseyCycle:
        """
        Insert or update a cycle.

        Activating a cycle first demotes any other Active cycle.
        """
        if values.get("state") == CycleState.ACTIVE.value:
            self.end_other_active(cycle_id)
        cycle = self.find_by_id(cycle_id)
        if cycle is None:
            return self.create(cycle_id=cycle_id, updated_at=datetime.utcnow(), **values)
        for key, value in values.items():
            setattr(cycle, key, value)
        cycle.updated_at = datetime.utcnow()
        self.db.flush()
        return cycle

    def find_unresolved_ended(self, now: datetime) -> List[OddysseyCycle]:
        """Cycles past their end time that have not been resolved on-chain."""
        return self.db.query(OddysseyCycle).filter(
            OddysseyCycle.state.notin_(SETTLED_CYCLE_STATES),
            OddysseyCycle.cycle_end_time.isnot(None),
            OddysseyCycle.cycle_end_time <= now,
        ).order_by(OddysseyCycle.cycle_id).all()

    def find_resolved_unevaluated(self) -> List[OddysseyCycle]:
        return self.db.query(OddysseyCycle).filter(
            OddysseyCycle.state.in_(SETTLED_CYCLE_STATES),
            OddysseyCycle.evaluated_at.is_(None),
        ).order_by(OddysseyCycle.cycle_id).all()

    def existing_ids(self) -> set:
        return {row[0] for row in self.db.query(OddysseyCycle.cycle_id).all()}

    def end_other_active(self, cycle_id: int) -> int:
        """Demote every other Active cycle to Ended so at most one stays Active."""
        others = self.db.query(OddysseyCycle).filter(
            OddysseyCycle.state == CycleState.ACTIVE.value,
            OddysseyCycle.cycle_id != cycle_id,
        ).all()
        for cycle in others:
            cycle.state = CycleState.ENDED.value
            cycle.updated_at = datetime.utcnow()
        self.db.flush()
        return len(others)


class CurrentCycleRepository(BaseRepository[CurrentCycle]):
    """Single-row pointer at the contract's current cycle."""

    def __init__(self, db):
        super().__init__(CurrentCycle, db)

    def get(self) -> Optional[int]:
        row = self.find_by_id(1)
        return row.cycle_id if row else None

    def set(self, cycle_id: int) -> None:
        row = self.find_by_id(1)
        if row is None:
            self.create(id=1, cycle_id=cycle_id, updated_at=datetime.utcnow())
            return
        row.cycle_id = cycle_id
        row.updated_at = datetime.utcnow()
        self.db.flush()


class DailyMatchRepository(BaseRepository[DailyGameMatch]):
    """Repository for the fixtures selected for a day."""

    def __init__(self, db):
        super().__init__(DailyGameMatch, db)

    def find_by_date(self, game_date: date) -> List[DailyGameMatch]:
        return self.db.query(DailyGameMatch).filter(
            DailyGameMatch.game_date == game_date
        ).order_by(DailyGameMatch.display_order).all()

    def find_by_cycle(self, cycle_id: int) -> List[DailyGameMatch]:
        return self.db.query(DailyGameMatch).filter(
            DailyGameMatch.cycle_id == cycle_id
        ).order_by(DailyGameMatch.display_order).all()

    def assigned_fixture_ids(self, active_cycle_ids: List[int]) -> set:
        """Fixture ids already used by the given cycles."""
        if not active_cycle_ids:
            return set()
        rows = self.db.query(DailyGameMatch.fixture_id).filter(
            DailyGameMatch.cycle_id.in_(active_cycle_ids)
        ).all()
        return {row[0] for row in rows}

    def assign_cycle(self, game_date: date, cycle_id: int) -> None:
        for match in self.find_by_date(game_date):
            match.cycle_id = cycle_id
        self.db.flush()


class SlipRepository(BaseRepository[Slip]):
    """Repository for Oddyssey slips."""

    def __init__(self, db):
        super().__init__(Slip, db)

    def find_by_cycle(self, cycle_id: int) -> List[Slip]:
        return self.db.query(Slip).filter(Slip.cycle_id == cycle_id).order_by(Slip.slip_id).all()

    def find_unevaluated(self, cycle_id: int) -> List[Slip]:
        return self.db.query(Slip).filter(
            Slip.cycle_id == cycle_id,
            Slip.is_evaluated.is_(False),
        ).order_by(Slip.slip_id).all()

    def find_evaluated(self, cycle_id: int) -> List[Slip]:
        return self.db.query(Slip).filter(
            Slip.cycle_id == cycle_id,
            Slip.is_evaluated.is_(True),
        ).order_by(Slip.slip_id).all()

    def leaderboard(self, cycle_id: int, limit: Optional[int] = None) -> List[Slip]:
        """Ranked slips of a cycle."""
        query = self.db.query(Slip).filter(
            Slip.cycle_id == cycle_id,
            Slip.leaderboard_rank.isnot(None),
        ).order_by(asc(Slip.leaderboard_rank))
        if limit:
            query = query.limit(limit)
        return query.all()

    def find_player_slips(self, cycle_id: int, player: str) -> List[Slip]:
        return self.db.query(Slip).filter(
            Slip.cycle_id == cycle_id,
            Slip.player == player,
        ).order_by(Slip.slip_id).all()


class ReputationRepository(BaseRepository[ReputationAction]):
    """Repository for reputation awarded per slip."""

    def __init__(self, db):
        super().__init__(ReputationAction, db)

    def award_once(self, player: str, slip_id: int, cycle_id: int, points: int, reason: str) -> Optional[ReputationAction]:
        """Award points for a slip unless that slip has already earned them."""
        return self.insert_if_absent(
            {"slip_id": slip_id},
            player=player,
            cycle_id=cycle_id,
            points=points,
            reason=reason,
            created_at=datetime.utcnow(),
        )
