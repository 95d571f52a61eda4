"""
Repositories for mirrored pools, their bets and the markets linked to them.

Usage:
    repo = PoolRepository(db)
    pool = repo.find_by_id(42)
    repo.recompute_bettor_stake(pool)
"""
from typing import List, Optional

from sqlalchemy import func

from marketsync.models import (
    ORACLE_GUIDED,
    Bet,
    CryptoPredictionMarket,
    LiquidityEvent,
    Pool,
    PredictionMarket,
)
from marketsync.models.pool_flags import REFUNDED, SETTLED
from marketsync.repositories.base import BaseRepository

_CLOSED_MASK = SETTLED | REFUNDED


class PoolRepository(BaseRepository[Pool]):
    """Repository for mirrored pools."""

    def __init__(self, db):
        super().__init__(Pool, db)

    def max_pool_id(self) -> Optional[int]:
        return self.db.query(func.max(Pool.pool_id)).scalar()

    def existing_ids(self) -> set:
        return {row[0] for row in self.db.query(Pool.pool_id).all()}

    def find_open_by_market_hash(self, market_id_hash: str) -> List[Pool]:
        """Unsettled, unrefunded guided pools resolving on the given market."""
        return self.db.query(Pool).filter(
            Pool.market_id_hash == market_id_hash,
            Pool.oracle_type == ORACLE_GUIDED,
            Pool.flags.op("&")(_CLOSED_MASK) == 0,
        ).order_by(Pool.pool_id).all()

    def find_open_guided(self) -> List[Pool]:
        return self.db.query(Pool).filter(
            Pool.oracle_type == ORACLE_GUIDED,
            Pool.flags.op("&")(_CLOSED_MASK) == 0,
        ).order_by(Pool.pool_id).all()

    def find_refund_candidates(self, now_ts: int) -> List[Pool]:
        """Open guided pools whose event has ended with no indexed bettor stake."""
        ended = self.db.query(Pool).filter(
            Pool.oracle_type == ORACLE_GUIDED,
            Pool.flags.op("&")(_CLOSED_MASK) == 0,
            Pool.event_end_time <= now_ts,
        ).order_by(Pool.pool_id).all()
        return [pool for pool in ended if int(pool.total_bettor_stake or 0) == 0]

    def find_with_onchain_stake_but_no_bets(self) -> List[Pool]:
        """Pools whose chain-side bettor stake is non-zero but no bet has been indexed."""
        no_bets = ~Pool.bets.any()
        candidates = self.db.query(Pool).filter(no_bets).all()
        return [pool for pool in candidates if (pool.onchain_total_bettor_stake or 0) > 0]

    def recompute_bettor_stake(self, pool: Pool) -> int:
        """
        Set total_bettor_stake to the sum of indexed for-outcome bets.

        Summed in Python so 256-bit amounts never pass through a float.
        """
        amounts = self.db.query(Bet.amount).filter(
            Bet.pool_id == pool.pool_id,
            Bet.is_for_outcome.is_(True),
        ).all()
        pool.total_bettor_stake = sum(int(row[0]) for row in amounts)
        self.db.flush()
        return pool.total_bettor_stake


class BetRepository(BaseRepository[Bet]):
    """Repository for indexed bets."""

    def __init__(self, db):
        super().__init__(Bet, db)

    def find_by_position(self, transaction_hash: str, log_index: int) -> Optional[Bet]:
        return self.filter_by_first(transaction_hash=transaction_hash, log_index=log_index)

    def find_by_pool(self, pool_id: int) -> List[Bet]:
        return self.db.query(Bet).filter(Bet.pool_id == pool_id).order_by(Bet.block_number, Bet.log_index).all()


class LiquidityEventRepository(BaseRepository[LiquidityEvent]):
    """Repository for creator-side liquidity changes."""

    def __init__(self, db):
        super().__init__(LiquidityEvent, db)


class PredictionMarketRepository(BaseRepository[PredictionMarket]):
    """Repository for guided football markets."""

    def __init__(self, db):
        super().__init__(PredictionMarket, db)

    def find_by_pool(self, pool_id: int) -> Optional[PredictionMarket]:
        return self.filter_by_first(pool_id=pool_id)

    def find_pending(self) -> List[PredictionMarket]:
        return self.db.query(PredictionMarket).filter(
            PredictionMarket.state == "pending"
        ).order_by(PredictionMarket.pool_id).all()

    def find_by_market_id(self, market_id: str) -> List[PredictionMarket]:
        return self.filter_by(market_id=market_id)


class CryptoMarketRepository(BaseRepository[CryptoPredictionMarket]):
    """Repository for guided crypto markets."""

    def __init__(self, db):
        super().__init__(CryptoPredictionMarket, db)

    def find_unresolved(self) -> List[CryptoPredictionMarket]:
        return self.filter_by(resolved=False)
