"""
Database models for the chain mirror, external results and the Oddyssey game.

Chain-derived rows are keyed by their on-chain identity (pool_id, slip_id,
cycle_id, transaction_hash + log_index). Wei amounts use Uint256 and are
never converted to floats.
"""
from datetime import datetime
from enum import Enum

from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, Column, Date, DateTime, Float, ForeignKey,
    Index, Integer, String, Text, UniqueConstraint, text,
)
from sqlalchemy.orm import declarative_base, relationship

from marketsync.models.pool_flags import PoolFlags
from marketsync.models.types import JSONPayload, Uint256

Base = declarative_base()

ORACLE_GUIDED = "GUIDED"
ORACLE_OPEN = "OPEN"


# =============================================================================
# INDEXER
# =============================================================================

class IndexerCursor(Base):
    """Resumable position of one (contract, topic set) log stream."""
    __tablename__ = "indexer_cursors"

    stream = Column(String(64), primary_key=True)  # e.g. 'pool_core', 'oddyssey'
    contract_address = Column(String(42), nullable=False)
    last_indexed_block = Column(BigInteger, nullable=False)  # inclusive
    batch_size = Column(Integer, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class ChainEvent(Base):
    """Raw decoded log. The unique key makes re-processing a window a no-op."""
    __tablename__ = "chain_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    stream = Column(String(64), nullable=False, index=True)
    contract_address = Column(String(42), nullable=False)
    event_name = Column(String(64), nullable=False, index=True)
    block_number = Column(BigInteger, nullable=False)
    transaction_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    args = Column(JSONPayload, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("block_number", "transaction_hash", "log_index", name="uq_chain_events_position"),
        Index("ix_chain_events_stream_block", "stream", "block_number"),
    )


class SyncAnomaly(Base):
    """Divergence between chain and mirror that is recorded rather than repaired."""
    __tablename__ = "sync_anomalies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(50), nullable=False)  # historical_bets_missing, deep_reorg, malformed_pool, ...
    entity_id = Column(String(100), nullable=False)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("kind", "entity_id", name="uq_sync_anomalies_kind_entity"),
    )


# =============================================================================
# POOLS AND BETS
# =============================================================================

class Pool(Base):
    """Mirror of one on-chain prediction pool. Never deleted."""
    __tablename__ = "pools"

    pool_id = Column(BigInteger, primary_key=True, autoincrement=False)
    creator = Column(String(42), nullable=False, index=True)
    predicted_outcome_hash = Column(String(66), nullable=False)
    predicted_outcome = Column(String(255), nullable=True)  # bytes32 decoded to text
    odds = Column(Integer, nullable=False)  # x100, 101-10000
    creator_stake = Column(Uint256, nullable=False, default=0)
    total_creator_side_stake = Column(Uint256, nullable=False, default=0)
    total_bettor_stake = Column(Uint256, nullable=False, default=0)  # sum of indexed for-outcome bets
    onchain_total_bettor_stake = Column(Uint256, nullable=False, default=0)
    max_bettor_stake = Column(Uint256, nullable=False, default=0)
    max_bet_per_user = Column(Uint256, nullable=False, default=0)
    event_start_time = Column(BigInteger, nullable=False)  # unix seconds
    event_end_time = Column(BigInteger, nullable=False, index=True)
    betting_end_time = Column(BigInteger, nullable=False)
    arbitration_deadline = Column(BigInteger, nullable=False, default=0)
    result_timestamp = Column(BigInteger, nullable=False, default=0)
    oracle_type = Column(String(10), nullable=False, index=True)  # GUIDED, OPEN
    market_type = Column(Integer, nullable=False, default=0)
    market_id = Column(String(100), nullable=False, index=True)
    market_id_hash = Column(String(66), nullable=False, index=True)  # keccak(market_id)
    result = Column(String(66), nullable=True)  # bytes32 hex, NULL while unsettled
    flags = Column(Integer, nullable=False, default=0)
    league = Column(String(255), nullable=True)
    category = Column(String(255), nullable=True)
    region = Column(String(255), nullable=True)
    home_team = Column(String(255), nullable=True)
    away_team = Column(String(255), nullable=True)
    title = Column(String(255), nullable=True)
    settlement_tx_hash = Column(String(66), nullable=True)
    refund_tx_hash = Column(String(66), nullable=True)
    settled_at = Column(DateTime, nullable=True)
    created_block = Column(BigInteger, nullable=True)
    created_tx_hash = Column(String(66), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    bets = relationship("Bet", back_populates="pool", cascade="all, delete-orphan")

    __table_args__ = (
        # settled (bit 0) and refunded (bit 4) are mutually exclusive
        CheckConstraint("(flags & 17) != 17", name="ck_pools_settled_xor_refunded"),
        Index("ix_pools_oracle_unsettled", "oracle_type", "flags"),
    )

    @property
    def pool_flags(self) -> PoolFlags:
        return PoolFlags.from_int(self.flags)

    @pool_flags.setter
    def pool_flags(self, value: PoolFlags) -> None:
        self.flags = value.to_int()

    @property
    def is_settled(self) -> bool:
        return self.pool_flags.settled

    @property
    def is_refunded(self) -> bool:
        return self.pool_flags.refunded

    @property
    def creator_side_won(self) -> bool:
        return self.pool_flags.creator_side_won


class Bet(Base):
    """A wager against a pool, keyed by its log position. Immutable once indexed."""
    __tablename__ = "bets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_id = Column(BigInteger, ForeignKey("pools.pool_id"), nullable=False, index=True)
    bettor = Column(String(42), nullable=False, index=True)
    amount = Column(Uint256, nullable=False)
    is_for_outcome = Column(Boolean, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    transaction_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    pool = relationship("Pool", back_populates="bets")

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_bets_position"),
    )


class LiquidityEvent(Base):
    """Creator-side liquidity added to or withdrawn from a pool."""
    __tablename__ = "liquidity_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_id = Column(BigInteger, ForeignKey("pools.pool_id"), nullable=False, index=True)
    provider = Column(String(42), nullable=False)
    amount = Column(Uint256, nullable=False)
    direction = Column(String(10), nullable=False)  # added, removed
    block_number = Column(BigInteger, nullable=False)
    transaction_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("transaction_hash", "log_index", name="uq_liquidity_events_position"),
    )


# =============================================================================
# EXTERNAL RESULTS AND PREDICTION MARKETS
# =============================================================================

class Fixture(Base):
    """Upcoming football fixture with the odds used for Oddyssey selection."""
    __tablename__ = "fixtures"

    fixture_id = Column(String(50), primary_key=True)
    league_id = Column(String(50), nullable=True, index=True)
    league_name = Column(String(255), nullable=True)
    home_team = Column(String(255), nullable=False)
    away_team = Column(String(255), nullable=False)
    starting_at = Column(DateTime, nullable=False, index=True)  # UTC
    status = Column(String(20), nullable=False, default="scheduled")
    odds_home = Column(Float, nullable=True)
    odds_draw = Column(Float, nullable=True)
    odds_away = Column(Float, nullable=True)
    odds_over_25 = Column(Float, nullable=True)
    odds_under_25 = Column(Float, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class FixtureResult(Base):
    """Final (or latest) result of a fixture. Derived outcomes are pure functions of the scores."""
    __tablename__ = "fixture_results"

    fixture_id = Column(String(50), primary_key=True)
    status = Column(String(20), nullable=False)  # scheduled, in-play, finished, cancelled, postponed
    home_score = Column(Integer, nullable=True)
    away_score = Column(Integer, nullable=True)
    ht_home_score = Column(Integer, nullable=True)
    ht_away_score = Column(Integer, nullable=True)
    outcome_1x2 = Column(String(1), nullable=True)
    outcome_ou25 = Column(String(5), nullable=True)
    outcome_btts = Column(String(3), nullable=True)
    outcome_ht_1x2 = Column(String(1), nullable=True)
    score_type = Column(String(10), nullable=True)  # CURRENT or FT_90MIN
    finished_at = Column(DateTime, nullable=True, index=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint(
            "status != 'finished' OR (home_score IS NOT NULL AND away_score IS NOT NULL)",
            name="ck_fixture_results_finished_scores",
        ),
    )


class PredictionMarket(Base):
    """Links a guided football pool's market_id to an external fixture and bet type."""
    __tablename__ = "football_prediction_markets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pool_id = Column(BigInteger, ForeignKey("pools.pool_id"), nullable=False, index=True)
    market_id = Column(String(100), nullable=False, index=True)
    fixture_id = Column(String(50), nullable=False, index=True)
    outcome_type = Column(String(10), nullable=False)  # 1X2, OU25, BTTS, HT_1X2, ...
    predicted_outcome = Column(String(100), nullable=False)
    result = Column(String(100), nullable=True)
    state = Column(String(10), nullable=False, default="pending")  # pending, resolved
    end_time = Column(BigInteger, nullable=False)
    resolved_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("pool_id", "market_id", name="uq_prediction_markets_pool_market"),
    )


class CryptoPredictionMarket(Base):
    """Guided crypto pool parsed into (coin, direction, target price)."""
    __tablename__ = "crypto_prediction_markets"

    pool_id = Column(BigInteger, ForeignKey("pools.pool_id"), primary_key=True, autoincrement=False)
    market_id = Column(String(100), nullable=False)
    coin = Column(String(10), nullable=False)
    coinpaprika_id = Column(String(50), nullable=False)
    direction = Column(String(5), nullable=False)  # above, below
    target_price = Column(String(40), nullable=False)  # decimal string
    end_time = Column(BigInteger, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class OracleSubmission(Base):
    """At most one confirmed guided-oracle outcome per market_id."""
    __tablename__ = "oracle_submissions"

    market_id = Column(String(100), primary_key=True)
    result_string = Column(String(100), nullable=True)
    result_data = Column(Text, nullable=False)  # 0x-hex of the submitted bytes
    transaction_hash = Column(String(66), nullable=True)  # NULL when found already set on-chain
    block_number = Column(BigInteger, nullable=True)
    source = Column(String(20), nullable=False, default="submitted")  # submitted, already_set
    submitted_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class GuidedOutcome(Base):
    """Mirrored OutcomeSubmitted event, queued for settlement."""
    __tablename__ = "guided_outcomes"

    market_id_hash = Column(String(66), primary_key=True)  # topic of the indexed string
    result_data = Column(Text, nullable=False)  # 0x-hex
    outcome_timestamp = Column(BigInteger, nullable=False)
    transaction_hash = Column(String(66), nullable=False)
    block_number = Column(BigInteger, nullable=False)
    processed = Column(Boolean, nullable=False, default=False, index=True)
    processed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# =============================================================================
# ODDYSSEY
# =============================================================================

class CycleState(str, Enum):
    """
    Daily cycle states.

    Only NOT_STARTED, ACTIVE, ENDED, RESOLVED and LEADERBOARD_FROZEN are
    persisted on a cycle row; the others describe the day before a cycle
    exists on-chain or while a transaction is in flight.
    """
    IDLE = "Idle"
    SELECTING_MATCHES = "SelectingMatches"
    PREPARING_CYCLE = "PreparingCycle"
    OPENING_ON_CHAIN = "OpeningOnChain"
    NOT_STARTED = "NotStarted"
    ACTIVE = "Active"
    ENDED = "Ended"
    RESOLVING = "Resolving"
    RESOLVED = "Resolved"
    LEADERBOARD_FROZEN = "LeaderboardFrozen"


SETTLED_CYCLE_STATES = (CycleState.RESOLVED.value, CycleState.LEADERBOARD_FROZEN.value)


class OddysseyCycle(Base):
    """A daily parlay round."""
    __tablename__ = "oddyssey_cycles"

    cycle_id = Column(BigInteger, primary_key=True, autoincrement=False)
    game_date = Column(Date, nullable=True, index=True)
    state = Column(String(20), nullable=False, default="Active")  # see CycleState
    matches_count = Column(Integer, nullable=False, default=0)
    matches_data = Column(JSONPayload, nullable=True)  # list[CycleMatch]
    cycle_start_time = Column(DateTime, nullable=True)
    cycle_end_time = Column(DateTime, nullable=True)
    tx_hash = Column(String(66), nullable=True)
    prize_pool = Column(Uint256, nullable=True)
    ready_for_resolution = Column(Boolean, nullable=False, default=False)
    resolution_prepared_at = Column(DateTime, nullable=True)
    resolution_data = Column(JSONPayload, nullable=True)  # list[CycleResult]
    is_resolved = Column(Boolean, nullable=False, default=False)
    resolution_tx_hash = Column(String(66), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    evaluated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    slips = relationship("Slip", back_populates="cycle")

    __table_args__ = (
        CheckConstraint(
            "NOT is_resolved OR resolution_tx_hash IS NOT NULL",
            name="ck_oddyssey_cycles_resolved_tx",
        ),
        # At most one Active cycle
        Index(
            "uq_oddyssey_cycles_one_active", "state", unique=True,
            postgresql_where=text("state = 'Active'"),
            sqlite_where=text("state = 'Active'"),
        ),
    )


class DailyGameMatch(Base):
    """A fixture selected for a day's cycle, in slot order."""
    __tablename__ = "daily_game_matches"

    id = Column(Integer, primary_key=True, autoincrement=True)
    game_date = Column(Date, nullable=False, index=True)
    fixture_id = Column(String(50), nullable=False, index=True)
    display_order = Column(Integer, nullable=False)  # 1..10
    cycle_id = Column(BigInteger, nullable=True, index=True)
    home_team = Column(String(255), nullable=False)
    away_team = Column(String(255), nullable=False)
    league_name = Column(String(255), nullable=True)
    starting_at = Column(DateTime, nullable=False)
    odds_home = Column(Integer, nullable=False)  # x1000
    odds_draw = Column(Integer, nullable=False)
    odds_away = Column(Integer, nullable=False)
    odds_over = Column(Integer, nullable=False)
    odds_under = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("game_date", "fixture_id", name="uq_daily_game_matches_date_fixture"),
        UniqueConstraint("game_date", "display_order", name="uq_daily_game_matches_date_slot"),
    )


class CurrentCycle(Base):
    """Single-row pointer at the contract's current cycle."""
    __tablename__ = "current_oddyssey_cycle"

    id = Column(Integer, primary_key=True, default=1)
    cycle_id = Column(BigInteger, nullable=False)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class Slip(Base):
    """A player's 10-pick parlay entry."""
    __tablename__ = "oddyssey_slips"

    slip_id = Column(BigInteger, primary_key=True, autoincrement=False)
    cycle_id = Column(BigInteger, ForeignKey("oddyssey_cycles.cycle_id"), nullable=False, index=True)
    player = Column(String(42), nullable=False, index=True)
    placed_at = Column(DateTime, nullable=False)
    predictions = Column(JSONPayload, nullable=False)  # list[SlipPrediction], exactly 10
    is_evaluated = Column(Boolean, nullable=False, default=False)
    correct_count = Column(Integer, nullable=False, default=0)
    final_score = Column(Uint256, nullable=False, default=0)
    leaderboard_rank = Column(Integer, nullable=True)
    prize_eligible = Column(Boolean, nullable=False, default=False)
    prize_claimed = Column(Boolean, nullable=False, default=False)
    prize_amount = Column(Uint256, nullable=True)
    transaction_hash = Column(String(66), nullable=True)
    evaluated_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    cycle = relationship("OddysseyCycle", back_populates="slips")

    __table_args__ = (
        Index("ix_oddyssey_slips_cycle_evaluated", "cycle_id", "is_evaluated"),
    )


class ReputationAction(Base):
    """Reputation points awarded once per evaluated slip."""
    __tablename__ = "reputation_actions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    player = Column(String(42), nullable=False, index=True)
    slip_id = Column(BigInteger, nullable=False, unique=True)
    cycle_id = Column(BigInteger, nullable=False)
    points = Column(Integer, nullable=False)
    reason = Column(String(100), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
