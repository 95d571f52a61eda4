"""Shared pytest fixtures for marketsync tests."""
import sys
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Tuple

import pytest
from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from hexbytes import HexBytes
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from web3 import Web3

# Add project root to Python path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from marketsync.chain.abi import POOL_STRUCT_FIELDS
from marketsync.chain.contracts import ContractRegistry, market_id_hash, str_to_bytes32, to_hex
from marketsync.core.database import session_scope
from marketsync.core.errors import BlockRangeTooLarge
from marketsync.models import (
    Base,
    DailyGameMatch,
    Fixture,
    FixtureResult,
    OddysseyCycle,
    Pool,
    PredictionMarket,
    Slip,
)
from marketsync.models.schemas import CycleMatch, dump_cycle_matches, dump_predictions, parse_predictions

POOL_CORE = "0x" + "11" * 20
GUIDED_ORACLE = "0x" + "22" * 20
ODDYSSEY = "0x" + "33" * 20
CREATOR = "0x" + "aa" * 20
PLAYER = "0x" + "bb" * 20

# Well-known hardhat account #0 key; never funded outside local chains
BOT_PRIVATE_KEY = "0xac0974bec39a17e36ba4a6b4d238ff944bacb478cbed5efcae784d7bf4f2ff80"
BOT_ADDRESS = "0xf39Fd6e51aad88F6F4ce6aB8827279cffFb92266"

EVENT_START = 1_760_000_000
EVENT_END = EVENT_START + 2 * 3600


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture(scope="function")
def engine(tmp_path):
    """
    File-backed SQLite engine with every table created.

    A file (not :memory:) gives each session its own connection, so
    service code that opens and commits its own sessions behaves as it does
    against PostgreSQL.
    """
    engine = create_engine(
        f"sqlite:///{tmp_path / 'marketsync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine, checkfirst=True)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Session for tests that exercise one unit of work directly."""
    session = session_factory()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def registry() -> ContractRegistry:
    return ContractRegistry({
        "PoolCore": POOL_CORE,
        "GuidedOracle": GUIDED_ORACLE,
        "Oddyssey": ODDYSSEY,
    })


# =============================================================================
# ROW BUILDERS
# =============================================================================

def seed(session_factory: sessionmaker, *rows) -> None:
    """Commit rows in their own session."""
    with session_scope(session_factory) as db:
        for row in rows:
            db.add(row)


def create_pool(pool_id: int = 0, **kwargs) -> Pool:
    """Helper to create a valid guided football Pool row.

    Usage:
        pool = create_pool(7, market_id="19391153", flags=1)
    """
    market_id = kwargs.pop("market_id", "19391153")
    defaults = {
        "pool_id": pool_id,
        "creator": CREATOR,
        "predicted_outcome_hash": to_hex(str_to_bytes32("Home wins")),
        "predicted_outcome": "Home wins",
        "odds": 200,
        "creator_stake": 10 ** 18,
        "total_creator_side_stake": 10 ** 18,
        "total_bettor_stake": 0,
        "onchain_total_bettor_stake": 0,
        "event_start_time": EVENT_START,
        "event_end_time": EVENT_END,
        "betting_end_time": EVENT_START - 60,
        "oracle_type": "GUIDED",
        "market_type": 0,
        "market_id": market_id,
        "market_id_hash": market_id_hash(market_id),
        "flags": 0,
        "category": "football",
        "home_team": "Arsenal",
        "away_team": "Chelsea",
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    return Pool(**defaults)


def create_market(pool_id: int = 0, market_id: str = "19391153", **kwargs) -> PredictionMarket:
    defaults = {
        "pool_id": pool_id,
        "market_id": market_id,
        "fixture_id": market_id,
        "outcome_type": "1X2",
        "predicted_outcome": "Home wins",
        "state": "pending",
        "end_time": EVENT_END,
        "created_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    return PredictionMarket(**defaults)


def create_fixture(fixture_id: str, starting_at: datetime, **kwargs) -> Fixture:
    defaults = {
        "fixture_id": fixture_id,
        "league_id": "8",
        "league_name": "Premier League",
        "home_team": f"Home {fixture_id}",
        "away_team": f"Away {fixture_id}",
        "starting_at": starting_at,
        "status": "scheduled",
        "odds_home": 2.1,
        "odds_draw": 3.4,
        "odds_away": 3.6,
        "odds_over_25": 1.9,
        "odds_under_25": 1.95,
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    return Fixture(**defaults)


def create_result(fixture_id: str, home: Optional[int], away: Optional[int], status: str = "finished", **kwargs) -> FixtureResult:
    defaults = {
        "fixture_id": fixture_id,
        "status": status,
        "home_score": home,
        "away_score": away,
        "finished_at": datetime.utcnow() - timedelta(hours=1),
        "updated_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    return FixtureResult(**defaults)


def cycle_matches(count: int = 10, start_time: int = EVENT_START, first_id: int = 1000) -> List[CycleMatch]:
    return [
        CycleMatch(
            fixture_id=str(first_id + i),
            start_time=start_time + i * 900,
            odds_home=2100, odds_draw=3400, odds_away=3600,
            odds_over=1900, odds_under=1950,
        )
        for i in range(count)
    ]


def create_cycle(cycle_id: int = 1, matches: Optional[List[CycleMatch]] = None, **kwargs) -> OddysseyCycle:
    matches = matches if matches is not None else cycle_matches()
    defaults = {
        "cycle_id": cycle_id,
        "game_date": date(2025, 10, 9),
        "state": "Active",
        "matches_count": len(matches),
        "matches_data": dump_cycle_matches(matches),
        "cycle_start_time": datetime(2025, 10, 9, 0, 10),
        "cycle_end_time": datetime(2025, 10, 9, 11, 0),
        "created_at": datetime.utcnow(),
        "updated_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    return OddysseyCycle(**defaults)


def create_daily_match(game_date: date, order: int, fixture: Fixture, cycle_id: Optional[int] = None) -> DailyGameMatch:
    return DailyGameMatch(
        game_date=game_date,
        fixture_id=fixture.fixture_id,
        display_order=order,
        cycle_id=cycle_id,
        home_team=fixture.home_team,
        away_team=fixture.away_team,
        league_name=fixture.league_name,
        starting_at=fixture.starting_at,
        odds_home=2100, odds_draw=3400, odds_away=3600, odds_over=1900, odds_under=1950,
        created_at=datetime.utcnow(),
    )


def moneyline(fixture_id: str, selection: str, odd: int = 2000) -> Dict[str, Any]:
    return {"bet_type": "MONEYLINE", "fixture_id": fixture_id, "selection": selection, "selected_odd": odd}


def over_under(fixture_id: str, selection: str, odd: int = 1900) -> Dict[str, Any]:
    return {"bet_type": "OVER_UNDER", "fixture_id": fixture_id, "selection": selection, "selected_odd": odd}


def create_slip(slip_id: int, cycle_id: int, predictions: List[Dict[str, Any]], **kwargs) -> Slip:
    defaults = {
        "slip_id": slip_id,
        "cycle_id": cycle_id,
        "player": PLAYER,
        "placed_at": datetime(2025, 10, 9, 1, 0) + timedelta(minutes=slip_id),
        "predictions": dump_predictions_dicts(predictions),
        "is_evaluated": False,
        "correct_count": 0,
        "final_score": 0,
        "created_at": datetime.utcnow(),
    }
    defaults.update(kwargs)
    return Slip(**defaults)


def dump_predictions_dicts(predictions: List[Dict[str, Any]]) -> list:
    return dump_predictions(parse_predictions(predictions))


# =============================================================================
# CHAIN FAKES
# =============================================================================

def pool_struct(**overrides) -> Tuple:
    """`pools(id)` return tuple in struct order, a valid open guided football pool by default."""
    values = {
        "creator": Web3.to_checksum_address(CREATOR),
        "odds": 200,
        "flags": 0,
        "oracleType": 0,
        "marketType": 0,
        "reserved": 0,
        "creatorStake": 10 ** 18,
        "totalCreatorSideStake": 10 ** 18,
        "maxBettorStake": 10 ** 18,
        "totalBettorStake": 0,
        "predictedOutcome": str_to_bytes32("Home wins"),
        "result": b"\x00" * 32,
        "eventStartTime": EVENT_START,
        "eventEndTime": EVENT_END,
        "bettingEndTime": EVENT_START - 60,
        "resultTimestamp": 0,
        "arbitrationDeadline": EVENT_END + 86400,
        "maxBetPerUser": 0,
        "league": str_to_bytes32("Premier League"),
        "category": str_to_bytes32("football"),
        "region": str_to_bytes32("England"),
        "homeTeam": str_to_bytes32("Arsenal"),
        "awayTeam": str_to_bytes32("Chelsea"),
        "title": str_to_bytes32("Arsenal vs Chelsea"),
        "marketId": "19391153",
    }
    for key, value in overrides.items():
        if key not in values:
            raise KeyError(key)
        values[key] = value
    return tuple(values[name] for name in POOL_STRUCT_FIELDS)


def make_log(
    registry: ContractRegistry,
    contract: str,
    name: str,
    args: Dict[str, Any],
    block: int,
    tx_hash: str = None,
    log_index: int = 0,
) -> Dict[str, Any]:
    """ABI-encode an eth_getLogs entry for a catalogue event."""
    spec = registry.event(contract, name)
    topics = [spec.topic]
    for param in spec.indexed:
        value = args[param.name]
        if param.type == "string":
            topics.append(to_hex(Web3.keccak(text=value)))
        else:
            topics.append(to_hex(abi_encode([param.type], [value])))
    data = abi_encode([p.type for p in spec.data_params], [args[p.name] for p in spec.data_params])
    return {
        "address": registry.address(contract),
        "topics": topics,
        "data": to_hex(data),
        "blockNumber": hex(block),
        "transactionHash": tx_hash or to_hex(Web3.keccak(text=f"{name}:{block}:{log_index}")),
        "logIndex": hex(log_index),
    }


def make_receipt(tx_hash: str, logs: Optional[List[Dict[str, Any]]] = None, status: int = 1, block: int = 500) -> Dict[str, Any]:
    return {
        "transactionHash": tx_hash,
        "status": hex(status),
        "blockNumber": hex(block),
        "logs": logs or [],
    }


class FakeChain:
    """
    In-process stand-in for RpcGateway.

    `eth_call` is answered by handlers registered per (contract, function):
    the handler receives the decoded arguments and returns the full tuple of
    return values (or raises ContractRevert). Logs are served from `logs`,
    refusing windows wider than `range_limit`.
    """

    def __init__(self, registry: ContractRegistry, head: int = 100, chain_id: int = 50312):
        self.registry = registry
        self.head = head
        self.chain_id = chain_id
        self.logs: List[Dict[str, Any]] = []
        self.range_limit: Optional[int] = None
        self.handlers: Dict[Tuple[str, bytes], Tuple[str, str, Callable]] = {}
        self.calls: List[Tuple[str, str, tuple]] = []
        self.get_logs_calls: List[Tuple[int, int]] = []
        self.backpressure: List[bool] = []
        self.breakers: Dict[str, str] = {"https://rpc.test": "closed"}

    def on(self, contract: str, fn: str, handler: Callable) -> "FakeChain":
        spec = self.registry.function(contract, fn)
        address = self.registry.address(contract).lower()
        self.handlers[(address, spec.selector)] = (contract, fn, handler)
        return self

    def returns(self, contract: str, fn: str, *values: Any) -> "FakeChain":
        return self.on(contract, fn, lambda *args: values)

    async def call(self, tx: Dict[str, Any], block: str = "latest") -> bytes:
        data = bytes(HexBytes(tx["data"]))
        key = (tx["to"].lower(), data[:4])
        if key not in self.handlers:
            raise AssertionError(f"Unexpected eth_call to {tx['to']} selector {data[:4].hex()}")
        contract, fn, handler = self.handlers[key]
        spec = self.registry.function(contract, fn)
        args = tuple(abi_decode(list(spec.input_types), data[4:])) if spec.input_types else ()
        self.calls.append((contract, fn, args))
        values = handler(*args)
        if not spec.output_types:
            return b""
        return abi_encode(list(spec.output_types), list(values))

    def calls_to(self, fn: str) -> List[tuple]:
        return [args for _, name, args in self.calls if name == fn]

    async def get_block_number(self, priority: bool = False) -> int:
        return self.head

    async def get_chain_id(self) -> int:
        return self.chain_id

    async def get_logs(self, from_block, to_block, address, topics=None, priority=True):
        self.get_logs_calls.append((from_block, to_block))
        if self.range_limit is not None and to_block - from_block + 1 > self.range_limit:
            raise BlockRangeTooLarge("query returned more than 10000 results", from_block, to_block)
        wanted = {t.lower() for t in topics[0]} if topics else None
        return [
            log for log in self.logs
            if from_block <= int(log["blockNumber"], 16) <= to_block
            and log["address"].lower() == address.lower()
            and (wanted is None or log["topics"][0].lower() in wanted)
        ]

    def set_backpressure(self, active: bool) -> None:
        self.backpressure.append(active)

    def health(self) -> Dict[str, str]:
        return dict(self.breakers)

    async def close(self) -> None:
        pass


@pytest.fixture
def chain(registry) -> FakeChain:
    return FakeChain(registry)
