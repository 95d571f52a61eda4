"""
Repositories for external fixtures, their results and guided-oracle bookkeeping.

Usage:
    repo = OracleSubmissionRepository(db)
    if not repo.exists(market_id):
        ...
"""
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select

from marketsync.models import (
    ORACLE_GUIDED,
    Fixture,
    FixtureResult,
    GuidedOutcome,
    OracleSubmission,
    Pool,
    PredictionMarket,
)
from marketsync.models.pool_flags import REFUNDED, SETTLED
from marketsync.repositories.base import BaseRepository


class FixtureRepository(BaseRepository[Fixture]):
    """Repository for upcoming fixtures."""

    def __init__(self, db):
        super().__init__(Fixture, db)

    def upsert(self, fixture_id: str, **values) -> Fixture:
        fixture = self.find_by_id(fixture_id)
        if fixture is None:
            return self.create(fixture_id=fixture_id, updated_at=datetime.utcnow(), **values)
        for key, value in values.items():
            setattr(fixture, key, value)
        fixture.updated_at = datetime.utcnow()
        self.db.flush()
        return fixture

    def find_starting_between(self, start: datetime, end: datetime) -> List[Fixture]:
        return self.db.query(Fixture).filter(
            Fixture.starting_at >= start,
            Fixture.starting_at < end,
        ).order_by(Fixture.starting_at, Fixture.fixture_id).all()

    def find_unfinished_started_between(self, start: datetime, end: datetime) -> List[Fixture]:
        """Fixtures that kicked off in the window and have no terminal result yet."""
        finished_ids = select(FixtureResult.fixture_id).where(
            FixtureResult.status.in_(("finished", "cancelled"))
        )
        return self.db.query(Fixture).filter(
            Fixture.starting_at >= start,
            Fixture.starting_at < end,
            ~Fixture.fixture_id.in_(finished_ids),
        ).all()


class FixtureResultRepository(BaseRepository[FixtureResult]):
    """Repository for fixture results."""

    def __init__(self, db):
        super().__init__(FixtureResult, db)

    def upsert(self, fixture_id: str, **values) -> FixtureResult:
        result = self.find_by_id(fixture_id)
        if result is None:
            return self.create(fixture_id=fixture_id, updated_at=datetime.utcnow(), **values)
        for key, value in values.items():
            setattr(result, key, value)
        result.updated_at = datetime.utcnow()
        self.db.flush()
        return result

    def find_many(self, fixture_ids: List[str]) -> dict:
        if not fixture_ids:
            return {}
        rows = self.db.query(FixtureResult).filter(FixtureResult.fixture_id.in_(fixture_ids)).all()
        return {row.fixture_id: row for row in rows}


class OracleSubmissionRepository(BaseRepository[OracleSubmission]):
    """Repository for confirmed guided-oracle submissions (one per market_id)."""

    def __init__(self, db):
        super().__init__(OracleSubmission, db)

    def find_submission_candidates(self, finished_before: datetime) -> List[Tuple[Pool, PredictionMarket, FixtureResult]]:
        """
        Open guided pools whose fixture finished before the cutoff and whose
        market has no submission yet.
        """
        submitted = select(OracleSubmission.market_id)
        rows = self.db.query(Pool, PredictionMarket, FixtureResult).join(
            PredictionMarket, PredictionMarket.pool_id == Pool.pool_id
        ).join(
            FixtureResult, FixtureResult.fixture_id == PredictionMarket.fixture_id
        ).filter(
            Pool.oracle_type == ORACLE_GUIDED,
            Pool.flags.op("&")(SETTLED | REFUNDED) == 0,
            FixtureResult.status == "finished",
            FixtureResult.finished_at.isnot(None),
            FixtureResult.finished_at <= finished_before,
            ~PredictionMarket.market_id.in_(submitted),
        ).order_by(Pool.pool_id).all()
        return rows


class GuidedOutcomeRepository(BaseRepository[GuidedOutcome]):
    """Repository for mirrored OutcomeSubmitted events."""

    def __init__(self, db):
        super().__init__(GuidedOutcome, db)

    def find_unprocessed(self) -> List[GuidedOutcome]:
        return self.db.query(GuidedOutcome).filter(
            GuidedOutcome.processed.is_(False)
        ).order_by(GuidedOutcome.block_number).all()

    def mark_processed(self, outcome: GuidedOutcome) -> None:
        outcome.processed = True
        outcome.processed_at = datetime.utcnow()
        self.db.flush()

    def find_open_pools(self, market_hashes: Optional[Iterable[str]] = None) -> List[Tuple[GuidedOutcome, Pool]]:
        """Submitted outcomes paired with the open guided pools they resolve."""
        query = self.db.query(GuidedOutcome, Pool).join(
            Pool, Pool.market_id_hash == GuidedOutcome.market_id_hash
        ).filter(
            Pool.oracle_type == ORACLE_GUIDED,
            Pool.flags.op("&")(SETTLED | REFUNDED) == 0,
        )
        if market_hashes is not None:
            query = query.filter(GuidedOutcome.market_id_hash.in_(list(market_hashes)))
        return query.order_by(Pool.pool_id).all()
