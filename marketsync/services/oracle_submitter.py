"""
Guided-oracle submitter.

For every open guided pool whose fixture finished at least
`submission_delay` ago and whose market has no submission yet, render the
result string in the pool's vocabulary and send
`submitOutcome(marketId, utf8(result))` from the oracle-bot key.

At-most-once per market id holds across restarts: the contract's
`outcomes(marketId).isSet` is checked before sending, and a confirmed
submission is recorded under the market id's primary key.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from marketsync.chain.contracts import ContractRegistry, normalize_address, to_hex
from marketsync.chain.transactions import TransactionSender, receipt_block
from marketsync.core.database import session_scope
from marketsync.core.errors import (
    REVERT_INSUFFICIENT_FUNDS,
    REVERT_OUTCOME_EXISTS,
    ContractRevert,
    FatalServiceError,
    OperatorAlert,
    TransactionFailed,
)
from marketsync.core.locks import KeyedLock
from marketsync.core.logging import get_logger
from marketsync.core.metrics import oracle_submissions_total
from marketsync.repositories import OracleSubmissionRepository, PredictionMarketRepository
from marketsync.services.outcomes import render_result

logger = get_logger(__name__)

SUBMITTED = "submitted"
ALREADY_SET = "already_set"
PARKED = "parked"
FAILED = "failed"


@dataclass(frozen=True)
class SubmissionCandidate:
    market_id: str
    pool_id: int
    result_string: str


@dataclass
class SubmitResult:
    outcomes: Dict[str, str] = field(default_factory=dict)  # market_id -> outcome

    def count(self, outcome: str) -> int:
        return sum(1 for value in self.outcomes.values() if value == outcome)


class OracleSubmitter:
    """Feeds finished fixture results into the GuidedOracle contract."""

    def __init__(
        self,
        gateway,
        registry: ContractRegistry,
        sender: TransactionSender,
        session_factory: sessionmaker,
        submission_delay_minutes: int = 15,
    ):
        self.gateway = gateway
        self.registry = registry
        self.sender = sender
        self.session_factory = session_factory
        self.submission_delay = timedelta(minutes=submission_delay_minutes)
        self.market_locks = KeyedLock("market")

    async def verify_signer(self) -> str:
        """
        Check that the signing key is the contract's oracle bot.

        Raises:
            FatalServiceError: The key is not authorised to submit outcomes
        """
        bot = await self.registry.read(self.gateway, "GuidedOracle", "oracleBot")
        if normalize_address(bot) != normalize_address(self.sender.address):
            raise FatalServiceError(
                f"Signer {self.sender.address} is not the GuidedOracle oracleBot ({bot})"
            )
        logger.info(f"✅ Signer {self.sender.address} is the configured oracle bot")
        return bot

    def candidates(self, now: Optional[datetime] = None) -> List[SubmissionCandidate]:
        """
        One candidate per market id.

        Pools sharing a market id resolve through one on-chain outcome; the
        lowest pool id decides the result vocabulary.
        """
        now = now or datetime.utcnow()
        cutoff = now - self.submission_delay
        selected: Dict[str, SubmissionCandidate] = {}

        with session_scope(self.session_factory) as db:
            rows = OracleSubmissionRepository(db).find_submission_candidates(cutoff)
            for pool, market, result in rows:
                if result.home_score is None or result.away_score is None:
                    logger.warning(f"⚠️ Fixture {result.fixture_id} finished without scores")
                    continue
                rendered = render_result(
                    market.outcome_type,
                    market.predicted_outcome,
                    result.home_score,
                    result.away_score,
                    result.ht_home_score,
                    result.ht_away_score,
                )
                if rendered is None:
                    logger.warning(
                        f"⚠️ Pool {pool.pool_id}: no {market.outcome_type} result for fixture {result.fixture_id}"
                    )
                    continue

                existing = selected.get(market.market_id)
                if existing is None:
                    selected[market.market_id] = SubmissionCandidate(market.market_id, pool.pool_id, rendered)
                elif existing.result_string != rendered:
                    logger.warning(
                        f"⚠️ Market {market.market_id}: pool {pool.pool_id} expects '{rendered}' "
                        f"but pool {existing.pool_id} decides '{existing.result_string}'"
                    )
        return list(selected.values())

    async def submit_pending(self, now: Optional[datetime] = None) -> SubmitResult:
        """
        Submit every pending outcome.

        Raises:
            FatalServiceError: Authorisation revert or unknown selector
            OperatorAlert: The bot wallet cannot pay for gas
        """
        result = SubmitResult()
        candidates = self.candidates(now)
        if not candidates:
            logger.debug("No oracle outcomes to submit")
            return result

        logger.info(f"📅 Submitting {len(candidates)} oracle outcomes")
        for candidate in candidates:
            async with self.market_locks.hold(candidate.market_id):
                outcome = await self.submit_one(candidate)
            result.outcomes[candidate.market_id] = outcome
            oracle_submissions_total.labels(outcome=outcome).inc()

        logger.info(
            f"✅ Oracle submissions: {result.count(SUBMITTED)} sent, {result.count(ALREADY_SET)} already set, "
            f"{result.count(PARKED)} parked, {result.count(FAILED)} failed"
        )
        return result

    async def submit_one(self, candidate: SubmissionCandidate) -> str:
        """Submit one market's outcome unless the contract already has it."""
        if self._already_recorded(candidate.market_id):
            return ALREADY_SET

        onchain = await self.registry.read(self.gateway, "GuidedOracle", "outcomes", candidate.market_id)
        if onchain["isSet"]:
            self._record_existing(candidate, onchain)
            return ALREADY_SET

        result_data = candidate.result_string.encode("utf-8")
        try:
            receipt = await self.sender.send("GuidedOracle", "submitOutcome", candidate.market_id, result_data)
        except ContractRevert as exc:
            if exc.kind == REVERT_OUTCOME_EXISTS:
                onchain = await self.registry.read(self.gateway, "GuidedOracle", "outcomes", candidate.market_id)
                self._record_existing(candidate, onchain)
                return ALREADY_SET
            if exc.kind == REVERT_INSUFFICIENT_FUNDS:
                raise OperatorAlert(f"Oracle bot {self.sender.address} cannot pay for submitOutcome: {exc}") from exc
            if exc.fatal:
                raise FatalServiceError(f"submitOutcome for {candidate.market_id} rejected: {exc}") from exc
            logger.warning(f"⚠️ submitOutcome for {candidate.market_id} parked ({exc.kind}): {exc}")
            return PARKED
        except TransactionFailed as exc:
            # No row is written, so the next tick retries
            logger.error(f"❌ submitOutcome for {candidate.market_id} failed on-chain: {exc}")
            return FAILED

        tx_hash = to_hex(receipt["transactionHash"]) if receipt.get("transactionHash") else None
        with session_scope(self.session_factory) as db:
            OracleSubmissionRepository(db).insert_if_absent(
                {"market_id": candidate.market_id},
                result_string=candidate.result_string,
                result_data=to_hex(result_data),
                transaction_hash=tx_hash,
                block_number=receipt_block(receipt),
                source=SUBMITTED,
                submitted_at=datetime.utcnow(),
            )
            self._store_market_result(db, candidate.market_id, candidate.result_string)

        logger.info(f"✅ Submitted outcome '{candidate.result_string}' for market {candidate.market_id}")
        return SUBMITTED

    def _already_recorded(self, market_id: str) -> bool:
        with session_scope(self.session_factory) as db:
            return OracleSubmissionRepository(db).exists(market_id)

    def _record_existing(self, candidate: SubmissionCandidate, onchain: Dict) -> None:
        """Record an outcome found already set on-chain without sending a transaction."""
        raw = bytes(onchain["resultData"])
        try:
            result_string = raw.decode("utf-8")
        except UnicodeDecodeError:
            result_string = None

        with session_scope(self.session_factory) as db:
            OracleSubmissionRepository(db).insert_if_absent(
                {"market_id": candidate.market_id},
                result_string=result_string,
                result_data=to_hex(raw),
                transaction_hash=None,
                block_number=None,
                source=ALREADY_SET,
                submitted_at=datetime.utcnow(),
            )
            if result_string is not None:
                self._store_market_result(db, candidate.market_id, result_string)

        if result_string is not None and result_string != candidate.result_string:
            logger.warning(
                f"⚠️ Market {candidate.market_id} already resolved on-chain as '{result_string}', "
                f"local result is '{candidate.result_string}'"
            )
        logger.info(f"✅ Outcome for market {candidate.market_id} was already set on-chain; recorded")

    @staticmethod
    def _store_market_result(db, market_id: str, result_string: str) -> None:
        for market in PredictionMarketRepository(db).find_by_market_id(market_id):
            market.result = result_string
        db.flush()
