"""
Settlement coordinator.

Turns mirrored `OutcomeSubmitted` events into `settlePool` transactions and
refunds guided pools nobody bet on. Streams are not ordered against each
other, so every decision starts from a fresh `pools(id)` read.

Pool transactions run concurrently up to `concurrency`; each pool is
serialised on the pool lock it shares with the pool mirror.
"""
import asyncio
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional

from hexbytes import HexBytes
from sqlalchemy.orm import sessionmaker

from marketsync.chain.contracts import ContractRegistry, outcome_hash, to_hex
from marketsync.chain.transactions import TransactionSender
from marketsync.core.database import session_scope
from marketsync.core.errors import (
    REVERT_ALREADY_SETTLED,
    REVERT_INSUFFICIENT_FUNDS,
    ContractRevert,
    FatalServiceError,
    OperatorAlert,
    TransactionFailed,
)
from marketsync.core.logging import get_logger
from marketsync.core.metrics import settlements_total
from marketsync.models import PoolFlags
from marketsync.repositories import GuidedOutcomeRepository, PoolRepository
from marketsync.services.pool_mirror import PoolMirror

logger = get_logger(__name__)

SETTLED = "settled"
REFUNDED = "refunded"
RECONCILED = "reconciled"
PARKED = "parked"
FAILED = "failed"


@dataclass
class SettlementResult:
    outcomes: Dict[int, str] = field(default_factory=dict)  # pool_id -> outcome

    def count(self, outcome: str) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)


class SettlementCoordinator:
    """Settles and refunds guided pools once their outcome is on-chain."""

    def __init__(
        self,
        mirror: PoolMirror,
        registry: ContractRegistry,
        sender: TransactionSender,
        session_factory: sessionmaker,
        concurrency: int = 8,
        settle_automatically: bool = False,
    ):
        self.mirror = mirror
        self.registry = registry
        self.sender = sender
        self.session_factory = session_factory
        self.settle_automatically = settle_automatically
        self._semaphore = asyncio.Semaphore(concurrency)

    @property
    def pool_locks(self):
        return self.mirror.pool_locks

    async def sweep(self, now: Optional[float] = None) -> SettlementResult:
        """
        Settle every open pool with a submitted outcome and refund ended pools without bets.

        Raises:
            FatalServiceError: Authorisation revert or unknown selector
            OperatorAlert: The bot wallet cannot pay for gas
        """
        now_ts = int(now if now is not None else time.time())
        work: Dict[int, Optional[bytes]] = {}
        hashes = set()

        with session_scope(self.session_factory) as db:
            for outcome, pool in GuidedOutcomeRepository(db).find_open_pools():
                work[pool.pool_id] = bytes(HexBytes(outcome.result_data))
                hashes.add(outcome.market_id_hash)
            for pool in PoolRepository(db).find_refund_candidates(now_ts):
                work.setdefault(pool.pool_id, None)
            for outcome in GuidedOutcomeRepository(db).find_unprocessed():
                hashes.add(outcome.market_id_hash)

        if work:
            logger.info(f"📅 Settlement sweep over {len(work)} pools")
        return await self._run(work, hashes, now_ts, "Settlement sweep")

    async def settle_markets(self, market_hashes: Iterable[str], now: Optional[float] = None) -> SettlementResult:
        """
        Settle the open pools of markets whose outcome was just submitted.

        Runs between sweeps so a pool does not wait for the next one; pools
        already settled by a sweep are reconciled, not settled twice.

        Raises:
            FatalServiceError: Authorisation revert or unknown selector
            OperatorAlert: The bot wallet cannot pay for gas
        """
        now_ts = int(now if now is not None else time.time())
        hashes = set(market_hashes)
        work: Dict[int, Optional[bytes]] = {}
        if not hashes:
            return SettlementResult()

        with session_scope(self.session_factory) as db:
            for outcome, pool in GuidedOutcomeRepository(db).find_open_pools(hashes):
                work[pool.pool_id] = bytes(HexBytes(outcome.result_data))

        if work:
            logger.info(f"🔄 Settling {len(work)} pools on fresh outcomes")
        return await self._run(work, hashes, now_ts, "Outcome settlement")

    async def _run(
        self, work: Dict[int, Optional[bytes]], hashes, now_ts: int, label: str
    ) -> SettlementResult:
        result = SettlementResult()
        if work:
            pool_ids = sorted(work)
            outcomes = await asyncio.gather(
                *(self.settle_pool(pool_id, work[pool_id], now_ts) for pool_id in pool_ids),
                return_exceptions=True,
            )
            escalate = None
            for pool_id, outcome in zip(pool_ids, outcomes):
                if isinstance(outcome, (FatalServiceError, OperatorAlert)):
                    escalate = escalate or outcome
                    outcome = FAILED
                elif isinstance(outcome, Exception):
                    logger.error(f"❌ Settlement of pool {pool_id} failed: {outcome}", exc_info=outcome)
                    outcome = FAILED
                result.outcomes[pool_id] = outcome
            if escalate is not None:
                raise escalate

        self._mark_processed(hashes)
        if result.outcomes:
            logger.info(
                f"✅ {label}: {result.count(SETTLED)} settled, {result.count(REFUNDED)} refunded, "
                f"{result.count(RECONCILED)} reconciled, {result.count(PARKED)} parked, {result.count(FAILED)} failed"
            )
        return result

    async def settle_pool(self, pool_id: int, result_data: Optional[bytes], now_ts: int) -> str:
        """
        Settle or refund one pool after re-reading it on-chain.

        Args:
            pool_id: Pool to act on
            result_data: Raw oracle result bytes, None when no outcome has been submitted
            now_ts: Current unix time
        """
        async with self._semaphore:
            async with self.pool_locks.hold(pool_id):
                struct = await self.mirror.fetch_pool(pool_id)
                flags = PoolFlags.from_int(struct["flags"])
                if flags.settled or flags.refunded:
                    self._reconcile(pool_id, struct)
                    return self._count("reconcile", RECONCILED)

                ended = now_ts >= int(struct["eventEndTime"])
                if int(struct["totalBettorStake"]) == 0 and ended and await self._refund_eligible(pool_id):
                    return await self._refund(pool_id)

                if result_data is None:
                    return self._count("refund", PARKED)
                return await self._settle(pool_id, result_data)

    async def _refund_eligible(self, pool_id: int) -> bool:
        try:
            await self.sender.simulate("PoolCore", "refundPool", pool_id)
        except ContractRevert as exc:
            logger.debug(f"Pool {pool_id} not refundable yet: {exc}")
            return False
        return True

    async def _refund(self, pool_id: int) -> str:
        try:
            receipt = await self.sender.send("PoolCore", "refundPool", pool_id)
        except (ContractRevert, TransactionFailed) as exc:
            return await self._handle_failure("refund", pool_id, exc)

        tx_hash = to_hex(receipt["transactionHash"])
        with session_scope(self.session_factory) as db:
            pool = PoolRepository(db).find_by_id(pool_id)
            if pool is not None:
                self.mirror.apply_refunded(db, pool, tx_hash)
        logger.info(f"✅ Pool {pool_id} refunded (no bets), tx {tx_hash}")
        return self._count("refund", REFUNDED)

    async def _settle(self, pool_id: int, result_data: bytes) -> str:
        try:
            if self.settle_automatically:
                receipt = await self.sender.send("PoolCore", "settlePoolAutomatically", pool_id)
            else:
                receipt = await self.sender.send("PoolCore", "settlePool", pool_id, outcome_hash(result_data))
        except (ContractRevert, TransactionFailed) as exc:
            return await self._handle_failure("settle", pool_id, exc)

        tx_hash = to_hex(receipt["transactionHash"])
        events = self.registry.decode_receipt_events(receipt, "PoolCore", "PoolSettled")
        if events:
            event = events[0]
            with session_scope(self.session_factory) as db:
                pool = PoolRepository(db).find_by_id(pool_id)
                if pool is not None:
                    self.mirror.apply_settled(
                        db,
                        pool,
                        bytes(event.args["result"]),
                        bool(event.args["creatorSideWon"]),
                        int(event.args["timestamp"]),
                        tx_hash,
                    )
        else:
            self._reconcile(pool_id, await self.mirror.fetch_pool(pool_id), tx_hash)
        logger.info(f"✅ Pool {pool_id} settled, tx {tx_hash}")
        return self._count("settle", SETTLED)

    async def _handle_failure(self, action: str, pool_id: int, exc: Exception) -> str:
        if isinstance(exc, TransactionFailed):
            logger.error(f"❌ {action} of pool {pool_id} failed on-chain: {exc}")
            return self._count(action, FAILED)

        if exc.kind == REVERT_ALREADY_SETTLED:
            self._reconcile(pool_id, await self.mirror.fetch_pool(pool_id))
            return self._count(action, RECONCILED)
        if exc.kind == REVERT_INSUFFICIENT_FUNDS:
            raise OperatorAlert(f"Oracle bot {self.sender.address} cannot pay to {action} pool {pool_id}: {exc}") from exc
        if exc.fatal:
            raise FatalServiceError(f"{action} of pool {pool_id} rejected: {exc}") from exc
        logger.warning(f"⚠️ {action} of pool {pool_id} parked ({exc.kind}): {exc}")
        return self._count(action, PARKED)

    def _reconcile(self, pool_id: int, struct: Dict, tx_hash: Optional[str] = None) -> None:
        """Copy a chain-side settlement or refund into the mirror."""
        flags = PoolFlags.from_int(struct["flags"])
        with session_scope(self.session_factory) as db:
            pool = PoolRepository(db).find_by_id(pool_id)
            if pool is None:
                logger.warning(f"⚠️ Pool {pool_id} is not mirrored; nothing to reconcile")
                return
            if flags.refunded:
                self.mirror.apply_refunded(db, pool, tx_hash)
            elif flags.settled:
                self.mirror.apply_settled(
                    db,
                    pool,
                    bytes(struct["result"]),
                    flags.creator_side_won,
                    int(struct["resultTimestamp"]),
                    tx_hash,
                )
        logger.info(f"✅ Pool {pool_id} reconciled from chain (settled={flags.settled}, refunded={flags.refunded})")

    def _mark_processed(self, market_hashes) -> None:
        """An outcome is processed once no open pool resolves through it."""
        if not market_hashes:
            return
        with session_scope(self.session_factory) as db:
            outcomes = GuidedOutcomeRepository(db)
            pools = PoolRepository(db)
            for market_hash in market_hashes:
                outcome = outcomes.find_by_id(market_hash)
                if outcome is None or outcome.processed:
                    continue
                if not pools.find_open_by_market_hash(market_hash):
                    outcomes.mark_processed(outcome)

    @staticmethod
    def _count(action: str, outcome: str) -> str:
        settlements_total.labels(action=action, outcome=outcome).inc()
        return outcome
