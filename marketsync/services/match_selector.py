"""
Oddyssey match selection.

Picks exactly `match_count` fixtures for a game date and persists them as
the day's `daily_game_matches`. A fixture is eligible when it kicks off
inside the cycle window, carries both 1X2 and over/under 2.5 odds, and is
not already used by the active cycle. Leagues are taken round-robin so one
busy league cannot fill the whole slip.
"""
from collections import OrderedDict
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from marketsync.chain.contracts import datetime_to_unix
from marketsync.core.errors import InsufficientFixtures
from marketsync.core.logging import get_logger
from marketsync.models import DailyGameMatch, Fixture
from marketsync.models.schemas import CycleMatch
from marketsync.repositories import CycleRepository, DailyMatchRepository, FixtureRepository

logger = get_logger(__name__)

_EXCLUDED_WORDS = ("women", "female", "ladies")

# Higher first; unknown leagues rank after all of these
LEAGUE_PRIORITIES: Dict[str, int] = {
    "Champions League": 110,
    "Europa League": 105,
    "Premier League": 100,
    "La Liga": 100,
    "Bundesliga": 100,
    "Serie A": 100,
    "Europa Conference League": 100,
    "Ligue 1": 95,
    "Eredivisie": 85,
    "Primeira Liga": 80,
    "Pro League": 80,
    "Super Lig": 75,
    "Championship": 70,
    "Serie B": 65,
    "La Liga 2": 65,
    "2. Bundesliga": 65,
    "Ligue 2": 65,
}
DEFAULT_LEAGUE_PRIORITY = 10


def scale_odds(value: float, scaling: int = 1000) -> int:
    """Decimal odds to the contract's integer representation."""
    return int(round(float(value) * scaling))


def has_required_odds(fixture: Fixture) -> bool:
    odds = (
        fixture.odds_home, fixture.odds_draw, fixture.odds_away,
        fixture.odds_over_25, fixture.odds_under_25,
    )
    return all(value is not None and value > 1.0 for value in odds)


def is_excluded(fixture: Fixture) -> bool:
    text = " ".join(filter(None, (fixture.league_name, fixture.home_team, fixture.away_team))).lower()
    return any(word in text for word in _EXCLUDED_WORDS)


def league_priority(league_name: Optional[str]) -> int:
    return LEAGUE_PRIORITIES.get(league_name or "", DEFAULT_LEAGUE_PRIORITY)


def round_robin(fixtures: List[Fixture], count: int) -> List[Fixture]:
    """
    Take one fixture per league in turn until `count` are chosen.

    Leagues are visited by priority, then by their earliest kick-off; within
    a league fixtures are taken in kick-off order.
    """
    by_league: "OrderedDict[str, List[Fixture]]" = OrderedDict()
    ordered = sorted(
        fixtures,
        key=lambda f: (-league_priority(f.league_name), f.starting_at, f.fixture_id),
    )
    for fixture in ordered:
        by_league.setdefault(fixture.league_id or fixture.league_name or "", []).append(fixture)

    chosen: List[Fixture] = []
    queues = list(by_league.values())
    while len(chosen) < count and any(queues):
        for queue in queues:
            if queue and len(chosen) < count:
                chosen.append(queue.pop(0))
    return chosen


class MatchSelector:
    """Chooses and persists the fixtures for a day's cycle."""

    def __init__(
        self,
        match_count: int = 10,
        odds_scaling: int = 1000,
        cycle_open_time: time = time(0, 10),
        kickoff_buffer_minutes: int = 60,
    ):
        self.match_count = match_count
        self.odds_scaling = odds_scaling
        self.cycle_open_time = cycle_open_time
        self.kickoff_buffer = timedelta(minutes=kickoff_buffer_minutes)

    def window(self, game_date: date) -> tuple:
        """Kick-off window for a game date: open time plus buffer until midnight."""
        start = datetime.combine(game_date, self.cycle_open_time) + self.kickoff_buffer
        end = datetime.combine(game_date + timedelta(days=1), time(0, 0))
        return start, end

    def eligible(self, db: Session, game_date: date) -> List[Fixture]:
        start, end = self.window(game_date)
        active = CycleRepository(db).find_active()
        taken = DailyMatchRepository(db).assigned_fixture_ids([active.cycle_id] if active else [])

        eligible = []
        for fixture in FixtureRepository(db).find_starting_between(start, end):
            if fixture.status != "scheduled" or fixture.fixture_id in taken:
                continue
            if is_excluded(fixture) or not has_required_odds(fixture):
                continue
            eligible.append(fixture)
        return eligible

    def select(self, db: Session, game_date: date) -> List[DailyGameMatch]:
        """
        Select and persist the day's fixtures.

        Re-running for a date that already has a full selection returns it
        unchanged.

        Raises:
            InsufficientFixtures: Fewer than `match_count` eligible fixtures
        """
        matches = DailyMatchRepository(db)
        existing = matches.find_by_date(game_date)
        if len(existing) == self.match_count:
            logger.info(f"✅ {game_date} already has {len(existing)} selected matches")
            return existing
        if existing:
            logger.warning(f"⚠️ Discarding partial selection of {len(existing)} matches for {game_date}")
            for row in existing:
                db.delete(row)
            db.flush()

        eligible = self.eligible(db, game_date)
        if len(eligible) < self.match_count:
            raise InsufficientFixtures(len(eligible), self.match_count)

        chosen = sorted(round_robin(eligible, self.match_count), key=lambda f: (f.starting_at, f.fixture_id))
        rows = []
        for order, fixture in enumerate(chosen, start=1):
            rows.append(matches.create(
                game_date=game_date,
                fixture_id=fixture.fixture_id,
                display_order=order,
                home_team=fixture.home_team,
                away_team=fixture.away_team,
                league_name=fixture.league_name,
                starting_at=fixture.starting_at,
                odds_home=scale_odds(fixture.odds_home, self.odds_scaling),
                odds_draw=scale_odds(fixture.odds_draw, self.odds_scaling),
                odds_away=scale_odds(fixture.odds_away, self.odds_scaling),
                odds_over=scale_odds(fixture.odds_over_25, self.odds_scaling),
                odds_under=scale_odds(fixture.odds_under_25, self.odds_scaling),
                created_at=datetime.utcnow(),
            ))

        leagues = len({row.league_name for row in rows})
        logger.info(f"✅ Selected {len(rows)} matches across {leagues} leagues for {game_date}")
        return rows


def to_cycle_matches(rows: List[DailyGameMatch]) -> List[CycleMatch]:
    """CycleMatch list, in slot order, from persisted selections."""
    return [
        CycleMatch(
            fixture_id=row.fixture_id,
            start_time=datetime_to_unix(row.starting_at),
            odds_home=row.odds_home,
            odds_draw=row.odds_draw,
            odds_away=row.odds_away,
            odds_over=row.odds_over,
            odds_under=row.odds_under,
            home_team=row.home_team,
            away_team=row.away_team,
            league_name=row.league_name,
        )
        for row in sorted(rows, key=lambda r: r.display_order)
    ]
