"""
Repository layer for data access.

Usage:
    from marketsync.repositories import PoolRepository, SlipRepository
    from marketsync.core.database import session_scope

    with session_scope(factory) as db:
        pool = PoolRepository(db).find_by_id(42)
"""

from marketsync.repositories.base import BaseRepository
from marketsync.repositories.indexer_repository import (
    AnomalyRepository,
    ChainEventRepository,
    CursorRepository,
)
from marketsync.repositories.oddyssey_repository import (
    CurrentCycleRepository,
    CycleRepository,
    DailyMatchRepository,
    ReputationRepository,
    SlipRepository,
)
from marketsync.repositories.oracle_repository import (
    FixtureRepository,
    FixtureResultRepository,
    GuidedOutcomeRepository,
    OracleSubmissionRepository,
)
from marketsync.repositories.pool_repository import (
    BetRepository,
    CryptoMarketRepository,
    LiquidityEventRepository,
    PoolRepository,
    PredictionMarketRepository,
)

__all__ = [
    "BaseRepository",
    "AnomalyRepository",
    "ChainEventRepository",
    "CursorRepository",
    "CurrentCycleRepository",
    "CycleRepository",
    "DailyMatchRepository",
    "ReputationRepository",
    "SlipRepository",
    "FixtureRepository",
    "FixtureResultRepository",
    "GuidedOutcomeRepository",
    "OracleSubmissionRepository",
    "BetRepository",
    "CryptoMarketRepository",
    "LiquidityEventRepository",
    "PoolRepository",
    "PredictionMarketRepository",
]
