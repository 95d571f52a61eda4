"""
Pool mirror.

Projects PoolCore events into the pools, bets and liquidity tables, links
guided pools to the markets the oracle submitter works from, and mirrors
GuidedOracle OutcomeSubmitted events for the settlement coordinator.

Events omit most of the pool struct, so PoolCreated re-reads `pools(id)`.
Pools missing from the DB (older than the provider's log retention) are
rebuilt from the same view by `backfill`.
"""
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from marketsync.chain.contracts import (
    ZERO_BYTES32,
    ContractRegistry,
    DecodedEvent,
    bytes32_to_str,
    market_id_hash,
    normalize_address,
    to_hex,
)
from marketsync.core.database import session_scope
from marketsync.core.errors import DataInconsistency
from marketsync.core.locks import KeyedLock
from marketsync.core.logging import get_logger
from marketsync.models import ORACLE_GUIDED, ORACLE_OPEN, Pool, PoolFlags
from marketsync.repositories import (
    AnomalyRepository,
    BetRepository,
    CryptoMarketRepository,
    GuidedOutcomeRepository,
    LiquidityEventRepository,
    PoolRepository,
    PredictionMarketRepository,
)
from marketsync.services.outcomes import infer_outcome_type, normalize_predicted_outcome

logger = get_logger(__name__)

# On-chain oracleType enum
ORACLE_TYPES = {0: ORACLE_GUIDED, 1: ORACLE_OPEN}

FOOTBALL_CATEGORIES = ("football", "soccer")
CRYPTO_CATEGORIES = ("crypto", "cryptocurrency")

# "BTC > $130,000", "ETH < $3,500", "BNB above $1450", "SOL below 200"
_CRYPTO_PREDICTION_RE = re.compile(
    r"^([A-Z]+)\s*(?:([><=]+)|(above|below))\s*\$?([0-9,]+(?:\.\d+)?)$",
    re.IGNORECASE,
)

COINPAPRIKA_IDS = {
    "BTC": "btc-bitcoin",
    "ETH": "eth-ethereum",
    "BNB": "bnb-binance-coin",
    "ADA": "ada-cardano",
    "SOL": "sol-solana",
    "DOT": "dot-polkadot",
    "LINK": "link-chainlink",
    "LTC": "ltc-litecoin",
    "MATIC": "matic-polygon",
    "AVAX": "avax-avalanche",
    "UNI": "uni-uniswap",
}


@dataclass(frozen=True)
class CryptoPrediction:
    coin: str
    coinpaprika_id: str
    direction: str  # above, below
    target_price: Decimal


@dataclass
class BackfillResult:
    pool_count: int = 0
    rebuilt: List[int] = field(default_factory=list)
    malformed: List[int] = field(default_factory=list)
    missing_bets: List[int] = field(default_factory=list)


def parse_crypto_prediction(predicted: str) -> Optional[CryptoPrediction]:
    """
    Parse a crypto price prediction.

    Returns None for text that is not a price prediction or names an unknown coin.
    """
    match = _CRYPTO_PREDICTION_RE.match((predicted or "").strip())
    if not match:
        return None

    coin, operator, keyword, price = match.groups()
    if operator:
        if ">" in operator:
            direction = "above"
        elif "<" in operator:
            direction = "below"
        else:
            return None
    else:
        direction = keyword.lower()

    coinpaprika_id = COINPAPRIKA_IDS.get(coin.upper())
    if coinpaprika_id is None:
        logger.warning(f"⚠️ Unknown crypto coin: {coin}")
        return None

    try:
        target = Decimal(price.replace(",", ""))
    except InvalidOperation:
        return None
    return CryptoPrediction(coin.upper(), coinpaprika_id, direction, target)


def _category_in(category: Optional[str], names) -> bool:
    return (category or "").strip().lower() in names


class PoolMirror:
    """
    Event handlers for PoolCore and GuidedOracle streams.

    Mutations of one pool are serialised on `pool_locks`, which the
    settlement coordinator shares.
    """

    def __init__(self, gateway, registry: ContractRegistry, pool_locks: Optional[KeyedLock] = None):
        self.gateway = gateway
        self.registry = registry
        self.pool_locks = pool_locks or KeyedLock("pool")
        # market hashes whose OutcomeSubmitted was indexed since the last drain
        self._submitted_outcomes: set = set()

    def pool_handlers(self) -> Dict[str, Any]:
        return {
            "PoolCreated": self.on_pool_created,
            "BetPlaced": self.on_bet_placed,
            "LiquidityAdded": self.on_liquidity_added,
            "LiquidityRemoved": self.on_liquidity_removed,
            "PoolSettled": self.on_pool_settled,
            "PoolRefunded": self.on_pool_refunded,
        }

    def oracle_handlers(self) -> Dict[str, Any]:
        return {"OutcomeSubmitted": self.on_outcome_submitted}

    # ========================================================================
    # Pool struct
    # ========================================================================

    async def fetch_pool(self, pool_id: int) -> Dict[str, Any]:
        """Full pool struct from `pools(id)`."""
        return await self.registry.read(self.gateway, "PoolCore", "pools", pool_id)

    @staticmethod
    def pool_values(struct: Dict[str, Any]) -> Dict[str, Any]:
        """Column values for a pool row from a decoded `pools(id)` struct."""
        market_id = struct["marketId"]
        result = bytes(struct["result"])
        predicted = bytes32_to_str(struct["predictedOutcome"])
        return {
            "creator": normalize_address(struct["creator"]),
            "predicted_outcome_hash": to_hex(struct["predictedOutcome"]),
            "predicted_outcome": predicted or None,
            "odds": int(struct["odds"]),
            "creator_stake": int(struct["creatorStake"]),
            "total_creator_side_stake": int(struct["totalCreatorSideStake"]),
            "onchain_total_bettor_stake": int(struct["totalBettorStake"]),
            "max_bettor_stake": int(struct["maxBettorStake"]),
            "max_bet_per_user": int(struct["maxBetPerUser"]),
            "event_start_time": int(struct["eventStartTime"]),
            "event_end_time": int(struct["eventEndTime"]),
            "betting_end_time": int(struct["bettingEndTime"]),
            "arbitration_deadline": int(struct["arbitrationDeadline"]),
            "result_timestamp": int(struct["resultTimestamp"]),
            "oracle_type": ORACLE_TYPES.get(int(struct["oracleType"]), ORACLE_OPEN),
            "market_type": int(struct["marketType"]),
            "market_id": market_id,
            "market_id_hash": market_id_hash(market_id),
            "result": None if result == ZERO_BYTES32 else to_hex(result),
            # Normalised so a refunded pool never carries the settled bit
            "flags": PoolFlags.from_int(struct["flags"]).to_int(),
            "league": bytes32_to_str(struct["league"]) or None,
            "category": bytes32_to_str(struct["category"]) or None,
            "region": bytes32_to_str(struct["region"]) or None,
            "home_team": bytes32_to_str(struct["homeTeam"]) or None,
            "away_team": bytes32_to_str(struct["awayTeam"]) or None,
            "title": bytes32_to_str(struct["title"]) or None,
        }

    def upsert_pool(
        self,
        db: Session,
        pool_id: int,
        struct: Dict[str, Any],
        event: Optional[DecodedEvent] = None,
    ) -> Optional[Pool]:
        """
        Insert or refresh a pool from its on-chain struct.

        Returns:
            The pool row, or None when the struct is malformed (zero event times)
        """
        values = self.pool_values(struct)
        if values["event_start_time"] == 0 or values["event_end_time"] == 0:
            AnomalyRepository(db).record(
                "malformed_pool",
                pool_id,
                f"event_start_time={values['event_start_time']} event_end_time={values['event_end_time']}",
            )
            logger.error(f"❌ Pool {pool_id} has zero event times; not mirrored")
            return None

        repo = PoolRepository(db)
        pool = repo.find_by_id(pool_id)
        if pool is None:
            pool = repo.create(
                pool_id=pool_id,
                total_bettor_stake=0,
                created_block=event.block_number if event else None,
                created_tx_hash=event.transaction_hash if event else None,
                **values,
            )
        else:
            # Local settlement bookkeeping is newer than a struct read taken mid-window
            if pool.is_settled or pool.is_refunded:
                values.pop("flags")
                values.pop("result")
            for key, value in values.items():
                setattr(pool, key, value)
            if event is not None and pool.created_block is None:
                pool.created_block = event.block_number
                pool.created_tx_hash = event.transaction_hash
            pool.updated_at = datetime.utcnow()
            repo.flush()

        self.link_market(db, pool)
        return pool

    def link_market(self, db: Session, pool: Pool) -> None:
        """Create the prediction-market row a guided pool resolves through."""
        if pool.oracle_type != ORACLE_GUIDED:
            return

        if _category_in(pool.category, FOOTBALL_CATEGORIES):
            predicted = normalize_predicted_outcome(pool.predicted_outcome or "", pool.home_team, pool.away_team)
            created = PredictionMarketRepository(db).insert_if_absent(
                {"pool_id": pool.pool_id, "market_id": pool.market_id},
                fixture_id=pool.market_id,
                outcome_type=infer_outcome_type(predicted),
                predicted_outcome=predicted,
                end_time=pool.event_end_time,
                created_at=datetime.utcnow(),
            )
            if created is not None:
                logger.info(f"✅ Linked pool {pool.pool_id} to fixture {pool.market_id} ({created.outcome_type})")
            return

        if _category_in(pool.category, CRYPTO_CATEGORIES):
            prediction = parse_crypto_prediction(pool.predicted_outcome or "")
            if prediction is None:
                logger.warning(
                    f"⚠️ Pool {pool.pool_id}: cannot parse crypto prediction '{pool.predicted_outcome}'"
                )
                return
            created = CryptoMarketRepository(db).insert_if_absent(
                {"pool_id": pool.pool_id},
                market_id=pool.market_id,
                coin=prediction.coin,
                coinpaprika_id=prediction.coinpaprika_id,
                direction=prediction.direction,
                target_price=str(prediction.target_price),
                end_time=pool.event_end_time,
                created_at=datetime.utcnow(),
            )
            if created is not None:
                logger.info(
                    f"✅ Linked pool {pool.pool_id} to crypto market "
                    f"({prediction.coin} {prediction.direction} ${prediction.target_price})"
                )

    def _require_pool(self, db: Session, pool_id: int, event: DecodedEvent) -> Optional[Pool]:
        """
        Load the pool an event refers to.

        Returns None (event skipped) for pools rejected as malformed.

        Raises:
            DataInconsistency: The pool was never indexed
        """
        pool = PoolRepository(db).find_by_id(pool_id)
        if pool is not None:
            return pool
        if AnomalyRepository(db).is_recorded("malformed_pool", pool_id):
            logger.warning(f"⚠️ Skipping {event.name} for malformed pool {pool_id}")
            return None
        raise DataInconsistency(
            f"{event.name} at {event.transaction_hash}:{event.log_index} references unknown pool {pool_id}"
        )

    def resolve_markets(self, db: Session, pool: Pool) -> None:
        now = datetime.utcnow()
        market = PredictionMarketRepository(db).find_by_pool(pool.pool_id)
        if market is not None and market.state != "resolved":
            market.state = "resolved"
            market.resolved_at = now
        crypto = CryptoMarketRepository(db).find_by_id(pool.pool_id)
        if crypto is not None:
            crypto.resolved = True
        db.flush()

    # ========================================================================
    # PoolCore handlers
    # ========================================================================

    async def on_pool_created(self, db: Session, event: DecodedEvent) -> None:
        pool_id = int(event.args["poolId"])
        struct = await self.fetch_pool(pool_id)
        async with self.pool_locks.hold(pool_id):
            pool = self.upsert_pool(db, pool_id, struct, event)
        if pool is not None:
            logger.info(
                f"✅ Pool {pool_id} created by {pool.creator} "
                f"({pool.oracle_type}, market {pool.market_id}, category {pool.category})"
            )

    async def on_bet_placed(self, db: Session, event: DecodedEvent) -> None:
        pool_id = int(event.args["poolId"])
        async with self.pool_locks.hold(pool_id):
            pool = self._require_pool(db, pool_id, event)
            if pool is None:
                return
            BetRepository(db).insert_if_absent(
                {"transaction_hash": event.transaction_hash, "log_index": event.log_index},
                pool_id=pool_id,
                bettor=normalize_address(event.args["bettor"]),
                amount=int(event.args["amount"]),
                is_for_outcome=bool(event.args["isForOutcome"]),
                block_number=event.block_number,
                created_at=datetime.utcnow(),
            )
            total = PoolRepository(db).recompute_bettor_stake(pool)
        logger.debug(f"Bet on pool {pool_id}: {event.args['amount']} wei, bettor stake now {total}")

    async def on_liquidity_added(self, db: Session, event: DecodedEvent) -> None:
        await self._apply_liquidity(db, event, "added")

    async def on_liquidity_removed(self, db: Session, event: DecodedEvent) -> None:
        await self._apply_liquidity(db, event, "removed")

    async def _apply_liquidity(self, db: Session, event: DecodedEvent, direction: str) -> None:
        pool_id = int(event.args["poolId"])
        amount = int(event.args["amount"])
        async with self.pool_locks.hold(pool_id):
            pool = self._require_pool(db, pool_id, event)
            if pool is None:
                return
            row = LiquidityEventRepository(db).insert_if_absent(
                {"transaction_hash": event.transaction_hash, "log_index": event.log_index},
                pool_id=pool_id,
                provider=normalize_address(event.args["provider"]),
                amount=amount,
                direction=direction,
                block_number=event.block_number,
                created_at=datetime.utcnow(),
            )
            if row is None:
                return
            current = int(pool.total_creator_side_stake or 0)
            if direction == "added":
                pool.total_creator_side_stake = current + amount
            else:
                if amount > current:
                    logger.warning(f"⚠️ Pool {pool_id}: removing {amount} from creator side of {current}")
                pool.total_creator_side_stake = max(0, current - amount)
            pool.updated_at = datetime.utcnow()
            db.flush()

    async def on_pool_settled(self, db: Session, event: DecodedEvent) -> None:
        pool_id = int(event.args["poolId"])
        async with self.pool_locks.hold(pool_id):
            pool = self._require_pool(db, pool_id, event)
            if pool is None:
                return
            self.apply_settled(
                db,
                pool,
                bytes(event.args["result"]),
                bool(event.args["creatorSideWon"]),
                int(event.args["timestamp"]),
                event.transaction_hash,
            )

    async def on_pool_refunded(self, db: Session, event: DecodedEvent) -> None:
        pool_id = int(event.args["poolId"])
        async with self.pool_locks.hold(pool_id):
            pool = self._require_pool(db, pool_id, event)
            if pool is None:
                return
            self.apply_refunded(db, pool, event.transaction_hash)
        logger.info(f"✅ Pool {pool_id} refunded: {event.args.get('reason', '')}")

    # ========================================================================
    # Settlement bookkeeping (caller holds the pool lock)
    # ========================================================================

    def apply_settled(
        self,
        db: Session,
        pool: Pool,
        result: bytes,
        creator_side_won: bool,
        result_timestamp: int,
        tx_hash: Optional[str],
    ) -> None:
        """Record a settlement. A zero result means the contract refunded everyone."""
        if result == ZERO_BYTES32:
            self.apply_refunded(db, pool, tx_hash)
            logger.info(f"✅ Pool {pool.pool_id} settled with zero result; mirrored as refund")
            return

        flags = pool.pool_flags
        if flags.refunded:
            logger.warning(f"⚠️ PoolSettled for refunded pool {pool.pool_id}; keeping refund")
        pool.pool_flags = flags.with_settled(creator_side_won)
        if not flags.refunded:
            pool.result = to_hex(result)
            pool.settlement_tx_hash = pool.settlement_tx_hash or tx_hash
            pool.result_timestamp = result_timestamp
            pool.settled_at = pool.settled_at or datetime.utcnow()
            logger.info(f"✅ Pool {pool.pool_id} settled (creator side won: {creator_side_won})")
        pool.updated_at = datetime.utcnow()
        self.resolve_markets(db, pool)

    def apply_refunded(self, db: Session, pool: Pool, tx_hash: Optional[str]) -> None:
        if pool.is_settled:
            logger.warning(f"⚠️ Refund for settled pool {pool.pool_id}; keeping settlement")
        pool.pool_flags = pool.pool_flags.with_refunded()
        if pool.is_refunded:
            pool.refund_tx_hash = pool.refund_tx_hash or tx_hash
        pool.updated_at = datetime.utcnow()
        self.resolve_markets(db, pool)

    # ========================================================================
    # GuidedOracle handler
    # ========================================================================

    async def on_outcome_submitted(self, db: Session, event: DecodedEvent) -> None:
        """Queue a submitted outcome for the settlement coordinator."""
        outcome = GuidedOutcomeRepository(db).insert_if_absent(
            {"market_id_hash": event.args["marketId"]},
            result_data=to_hex(event.args["resultData"]),
            outcome_timestamp=int(event.args["timestamp"]),
            transaction_hash=event.transaction_hash,
            block_number=event.block_number,
            processed=False,
            created_at=datetime.utcnow(),
        )
        if outcome is not None:
            logger.info(f"✅ Outcome submitted for market hash {outcome.market_id_hash}")
            self._submitted_outcomes.add(outcome.market_id_hash)

    def has_submitted_outcomes(self) -> bool:
        return bool(self._submitted_outcomes)

    def drain_submitted_outcomes(self) -> List[str]:
        """Market hashes with a newly mirrored outcome, cleared on read."""
        hashes, self._submitted_outcomes = sorted(self._submitted_outcomes), set()
        return hashes

    # ========================================================================
    # Backfill
    # ========================================================================

    async def backfill(self, session_factory: sessionmaker) -> BackfillResult:
        """
        Rebuild pools the indexer never saw and flag pools with unindexed bets.

        Compares `poolCount()` with the mirrored ids; each missing id is read
        from `pools(id)` and committed on its own.
        """
        result = BackfillResult()
        result.pool_count = int(await self.registry.read(self.gateway, "PoolCore", "poolCount"))

        with session_scope(session_factory) as db:
            existing = PoolRepository(db).existing_ids()
        missing = [pool_id for pool_id in range(result.pool_count) if pool_id not in existing]
        if missing:
            logger.info(f"📅 Backfilling {len(missing)} pools missing from the mirror")

        for pool_id in missing:
            struct = await self.fetch_pool(pool_id)
            async with self.pool_locks.hold(pool_id):
                with session_scope(session_factory) as db:
                    pool = self.upsert_pool(db, pool_id, struct)
            if pool is None:
                result.malformed.append(pool_id)
            else:
                result.rebuilt.append(pool_id)

        with session_scope(session_factory) as db:
            anomalies = AnomalyRepository(db)
            for pool in PoolRepository(db).find_with_onchain_stake_but_no_bets():
                anomalies.record(
                    "historical_bets_missing",
                    pool.pool_id,
                    f"on-chain bettor stake {pool.onchain_total_bettor_stake} but no indexed bets",
                )
                result.missing_bets.append(pool.pool_id)

        if result.missing_bets:
            logger.warning(
                f"⚠️ {len(result.missing_bets)} pools have on-chain bets older than the log horizon"
            )
        logger.info(
            f"✅ Pool backfill done: {result.pool_count} on-chain, "
            f"{len(result.rebuilt)} rebuilt, {len(result.malformed)} malformed"
        )
        return result
