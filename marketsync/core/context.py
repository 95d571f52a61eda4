"""
Service wiring.

Builds every component of the sync service from one `Settings` instance so
the scheduler, the CLI runner and tests share the same object graph.
Without an oracle-bot key the context is read-only: the indexer, results
fetcher, slip evaluator and health probe run; nothing that signs does.
"""
from datetime import time
from typing import List, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from marketsync.chain.contracts import ContractRegistry
from marketsync.chain.rpc_gateway import RpcGateway
from marketsync.chain.transactions import TransactionSender
from marketsync.core.config import Settings, check_settings
from marketsync.core.database import create_db_engine, init_db
from marketsync.core.errors import ConfigurationError
from marketsync.core.locks import KeyedLock
from marketsync.core.logging import get_logger
from marketsync.services.health import HealthMonitor
from marketsync.services.indexer import IndexerCore, Stream
from marketsync.services.match_selector import MatchSelector
from marketsync.services.oddyssey_driver import OddysseyDriver
from marketsync.services.oddyssey_mirror import OddysseyMirror
from marketsync.services.oracle_submitter import OracleSubmitter
from marketsync.services.pool_mirror import PoolMirror
from marketsync.services.results_fetcher import ResultsFetcher
from marketsync.services.settlement import SettlementCoordinator
from marketsync.services.slip_evaluator import SlipEvaluator

logger = get_logger(__name__)


class ServiceContext:
    """
    All long-lived service objects.

    Attributes:
        sender: Transaction signer, None in read-only mode
        submitter / settlement / driver: Writers, None in read-only mode
    """

    def __init__(
        self,
        config: Settings,
        engine: Optional[Engine] = None,
        gateway=None,
        fetcher: Optional[ResultsFetcher] = None,
    ):
        self.config = config
        self.engine = engine or create_db_engine(config)
        self.session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

        self.gateway = gateway or RpcGateway(config.RPC_URLS, timeout=config.RPC_TIMEOUT_SECONDS)
        self.registry = ContractRegistry(config.CONTRACT_ADDRESSES)
        self.pool_locks = KeyedLock("pool")

        self.sender: Optional[TransactionSender] = None
        if config.ORACLE_BOT_PRIVATE_KEY:
            self.sender = TransactionSender(
                self.gateway,
                self.registry,
                config.ORACLE_BOT_PRIVATE_KEY,
                config.CHAIN_ID,
                gas_buffer_percent=config.GAS_BUFFER_PERCENT,
                gas_price_multiplier=config.GAS_PRICE_MULTIPLIER,
                fallback_gas_price_gwei=config.FALLBACK_GAS_PRICE_GWEI,
                receipt_timeout=config.RECEIPT_TIMEOUT_SECONDS,
                receipt_poll_interval=config.RECEIPT_POLL_SECONDS,
            )

        self.pool_mirror = PoolMirror(self.gateway, self.registry, self.pool_locks)
        self.oddyssey_mirror = OddysseyMirror(self.gateway, self.registry)
        self.indexer = IndexerCore(
            self.gateway,
            self.registry,
            self.session_factory,
            self.streams(),
            confirmation_depth=config.RPC_CONFIRMATION_DEPTH,
            batch_initial=config.INDEXER_BATCH_SIZE_INITIAL,
            batch_min=config.INDEXER_BATCH_SIZE_MIN,
            batch_max=config.INDEXER_BATCH_SIZE_MAX,
            batch_growth=config.INDEXER_BATCH_GROWTH,
            growth_ticks=config.INDEXER_GROWTH_TICKS,
            poll_interval_base=config.INDEXER_POLL_INTERVAL_BASE,
            poll_interval_active=config.INDEXER_POLL_INTERVAL_ACTIVE,
            lag_warning_blocks=config.INDEXER_LAG_WARNING_BLOCKS,
            start_block=config.INDEXER_START_BLOCK,
        )

        self.fetcher = fetcher or ResultsFetcher(
            config.SPORTMONKS_API_TOKEN,
            self.session_factory,
            base_url=config.SPORTMONKS_BASE_URL,
            page_delay=config.RESULTS_PAGE_DELAY_SECONDS,
        )

        hour, minute = config.clock_time(config.ODDYSSEY_CYCLE_OPEN_TIME)
        self.selector = MatchSelector(
            match_count=config.ODDYSSEY_MATCH_COUNT,
            odds_scaling=config.ODDYSSEY_ODDS_SCALING,
            cycle_open_time=time(hour, minute),
            kickoff_buffer_minutes=config.ODDYSSEY_KICKOFF_BUFFER_MINUTES,
        )
        self.evaluator = SlipEvaluator(
            self.session_factory,
            leaderboard_size=config.ODDYSSEY_LEADERBOARD_SIZE,
            scaling=config.ODDYSSEY_ODDS_SCALING,
        )
        self.health = HealthMonitor(
            self.gateway,
            self.session_factory,
            engine=self.engine,
            confirmation_depth=config.RPC_CONFIRMATION_DEPTH,
            lag_warning_blocks=config.INDEXER_LAG_WARNING_BLOCKS,
        )

        self.submitter: Optional[OracleSubmitter] = None
        self.settlement: Optional[SettlementCoordinator] = None
        self.driver: Optional[OddysseyDriver] = None
        if self.sender is not None:
            self.submitter = OracleSubmitter(
                self.gateway,
                self.registry,
                self.sender,
                self.session_factory,
                submission_delay_minutes=config.ORACLE_SUBMISSION_DELAY_MINUTES,
            )
            self.settlement = SettlementCoordinator(
                self.pool_mirror,
                self.registry,
                self.sender,
                self.session_factory,
                concurrency=config.SETTLEMENT_CONCURRENCY,
                settle_automatically=config.SETTLE_AUTOMATICALLY,
            )
            self.driver = OddysseyDriver(
                self.gateway,
                self.registry,
                self.sender,
                self.session_factory,
                self.selector,
                cancelled_grace_hours=config.ODDYSSEY_CANCELLED_GRACE_HOURS,
            )
        else:
            logger.warning("⚠️ ORACLE_BOT_PRIVATE_KEY not set; running read-only (no oracle, settlement or cycles)")

    @property
    def read_only(self) -> bool:
        return self.sender is None

    def streams(self) -> List[Stream]:
        """Watched log streams; streams of unconfigured contracts are skipped by the indexer."""
        return [
            Stream("pool_core", "PoolCore", self.pool_mirror.pool_handlers()),
            Stream("guided_oracle", "GuidedOracle", self.pool_mirror.oracle_handlers()),
            Stream("oddyssey", "Oddyssey", self.oddyssey_mirror.handlers()),
        ]

    async def startup_checks(self, create_tables: bool = True) -> None:
        """
        Refuse to start on a misconfigured deployment.

        Raises:
            ConfigurationError: Bad settings or the RPC serves another chain
            FatalServiceError: The signing key is not the oracle bot
        """
        check_settings(self.config)
        if create_tables:
            init_db(self.engine)

        chain_id = await self.gateway.get_chain_id()
        if chain_id != self.config.CHAIN_ID:
            raise ConfigurationError(f"RPC serves chain {chain_id}, expected {self.config.CHAIN_ID}")
        logger.info(f"✅ Connected to chain {chain_id}")

        if self.submitter is not None and self.registry.has("GuidedOracle"):
            await self.submitter.verify_signer()

    async def close(self) -> None:
        await self.gateway.close()
        await self.fetcher.close()
        self.engine.dispose()
        logger.info("✅ Service context closed")
