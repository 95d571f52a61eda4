"""
Models for the chain mirror.

Usage:
    from marketsync.models import Pool, Bet, OddysseyCycle, Slip
"""
from marketsync.models.models import (
    Base,
    ORACLE_GUIDED,
    ORACLE_OPEN,
    IndexerCursor,
    ChainEvent,
    SyncAnomaly,
    Pool,
    Bet,
    LiquidityEvent,
    Fixture,
    FixtureResult,
    PredictionMarket,
    CryptoPredictionMarket,
    OracleSubmission,
    GuidedOutcome,
    CycleState,
    SETTLED_CYCLE_STATES,
    OddysseyCycle,
    DailyGameMatch,
    CurrentCycle,
    Slip,
    ReputationAction,
)
from marketsync.models.pool_flags import PoolFlags

__all__ = [
    "Base",
    "ORACLE_GUIDED",
    "ORACLE_OPEN",
    "IndexerCursor",
    "ChainEvent",
    "SyncAnomaly",
    "Pool",
    "Bet",
    "LiquidityEvent",
    "Fixture",
    "FixtureResult",
    "PredictionMarket",
    "CryptoPredictionMarket",
    "OracleSubmission",
    "GuidedOutcome",
    "CycleState",
    "SETTLED_CYCLE_STATES",
    "OddysseyCycle",
    "DailyGameMatch",
    "CurrentCycle",
    "Slip",
    "ReputationAction",
    "PoolFlags",
]
