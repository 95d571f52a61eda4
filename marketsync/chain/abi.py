"""
ABI catalogue for the contracts the services talk to.

Functions and events are declared as plain data (name plus canonical
Solidity types) in the same shape the decoders use, so selectors and topics
are derived instead of hard-coded.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from web3 import Web3

# Oddyssey Match / Result tuples
MATCH_RESULT_TYPE = "(uint8,uint8)"
MATCH_TYPE = f"(uint64,uint64,uint32,uint32,uint32,uint32,uint32,{MATCH_RESULT_TYPE})"
PREDICTION_TYPE = "(uint64,uint8,string,uint32)"
SLIP_TYPE = f"(address,uint256,uint256,{PREDICTION_TYPE}[10],uint256,uint8,bool)"


@dataclass(frozen=True)
class FunctionSpec:
    name: str
    input_types: Tuple[str, ...] = ()
    output_types: Tuple[str, ...] = ()
    output_names: Tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.input_types)})"

    @property
    def selector(self) -> bytes:
        return bytes(Web3.keccak(text=self.signature)[:4])

    def encode(self, *args: Any) -> bytes:
        """Calldata: 4-byte selector followed by the ABI-encoded arguments."""
        if len(args) != len(self.input_types):
            raise ValueError(f"{self.signature} expects {len(self.input_types)} args, got {len(args)}")
        return self.selector + abi_encode(list(self.input_types), list(args))

    def decode(self, data: bytes) -> Tuple[Any, ...]:
        return abi_decode(list(self.output_types), bytes(data))


@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    name: str
    params: Tuple[EventParam, ...] = field(default_factory=tuple)

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(p.type for p in self.params)})"

    @property
    def topic(self) -> str:
        return "0x" + bytes(Web3.keccak(text=self.signature)).hex()

    @property
    def indexed(self) -> List[EventParam]:
        return [p for p in self.params if p.indexed]

    @property
    def data_params(self) -> List[EventParam]:
        return [p for p in self.params if not p.indexed]

    def decode(self, topics: Sequence[bytes], data: bytes) -> Dict[str, Any]:
        """
        Decode a log's arguments.

        Indexed dynamic types (string, bytes) only carry their keccak hash in
        the topic; those come back as 0x-hex strings.
        """
        indexed = self.indexed
        if len(topics) != len(indexed) + 1:
            raise ValueError(f"{self.name}: expected {len(indexed) + 1} topics, got {len(topics)}")

        args: Dict[str, Any] = {}
        for param, topic in zip(indexed, topics[1:]):
            if param.type in ("string", "bytes") or param.type.endswith("]") or param.type.startswith("("):
                args[param.name] = "0x" + bytes(topic).hex()
            else:
                args[param.name] = abi_decode([param.type], bytes(topic))[0]

        data_params = self.data_params
        if data_params:
            values = abi_decode([p.type for p in data_params], bytes(data))
            for param, value in zip(data_params, values):
                args[param.name] = value
        return args


def _event(name: str, *params: Tuple[str, str, bool]) -> EventSpec:
    return EventSpec(name, tuple(EventParam(n, t, i) for n, t, i in params))


# =============================================================================
# POOL CORE
# =============================================================================

POOL_STRUCT_FIELDS = (
    "creator", "odds", "flags", "oracleType", "marketType", "reserved",
    "creatorStake", "totalCreatorSideStake", "maxBettorStake", "totalBettorStake",
    "predictedOutcome", "result",
    "eventStartTime", "eventEndTime", "bettingEndTime", "resultTimestamp",
    "arbitrationDeadline", "maxBetPerUser",
    "league", "category", "region", "homeTeam", "awayTeam", "title",
    "marketId",
)

POOL_CORE_FUNCTIONS = {
    "poolCount": FunctionSpec("poolCount", (), ("uint256",)),
    "pools": FunctionSpec(
        "pools",
        ("uint256",),
        (
            "address", "uint16", "uint8", "uint8", "uint8", "uint8",
            "uint256", "uint256", "uint256", "uint256",
            "bytes32", "bytes32",
            "uint256", "uint256", "uint256", "uint256",
            "uint256", "uint256",
            "bytes32", "bytes32", "bytes32", "bytes32", "bytes32", "bytes32",
            "string",
        ),
        POOL_STRUCT_FIELDS,
    ),
    "settlePool": FunctionSpec("settlePool", ("uint256", "bytes32")),
    "settlePoolAutomatically": FunctionSpec("settlePoolAutomatically", ("uint256",)),
    "refundPool": FunctionSpec("refundPool", ("uint256",)),
}

POOL_CORE_EVENTS = {
    "PoolCreated": _event(
        "PoolCreated",
        ("poolId", "uint256", True),
        ("creator", "address", True),
        ("eventStartTime", "uint256", False),
        ("eventEndTime", "uint256", False),
        ("oracleType", "uint8", False),
        ("marketId", "bytes32", False),
        ("marketType", "uint8", False),
        ("league", "string", False),
        ("category", "string", False),
    ),
    "BetPlaced": _event(
        "BetPlaced",
        ("poolId", "uint256", True),
        ("bettor", "address", True),
        ("amount", "uint256", False),
        ("isForOutcome", "bool", False),
    ),
    "LiquidityAdded": _event(
        "LiquidityAdded",
        ("poolId", "uint256", True),
        ("provider", "address", True),
        ("amount", "uint256", False),
    ),
    "LiquidityRemoved": _event(
        "LiquidityRemoved",
        ("poolId", "uint256", True),
        ("provider", "address", True),
        ("amount", "uint256", False),
    ),
    "PoolSettled": _event(
        "PoolSettled",
        ("poolId", "uint256", True),
        ("result", "bytes32", False),
        ("creatorSideWon", "bool", False),
        ("timestamp", "uint256", False),
    ),
    "PoolRefunded": _event(
        "PoolRefunded",
        ("poolId", "uint256", True),
        ("reason", "string", False),
    ),
}

# =============================================================================
# GUIDED ORACLE
# =============================================================================

GUIDED_ORACLE_FUNCTIONS = {
    "outcomes": FunctionSpec("outcomes", ("string",), ("bool", "bytes", "uint256"), ("isSet", "resultData", "timestamp")),
    "oracleBot": FunctionSpec("oracleBot", (), ("address",)),
    "submitOutcome": FunctionSpec("submitOutcome", ("string", "bytes")),
}

GUIDED_ORACLE_EVENTS = {
    "OutcomeSubmitted": _event(
        "OutcomeSubmitted",
        ("marketId", "string", True),
        ("resultData", "bytes", False),
        ("timestamp", "uint256", False),
    ),
}

# =============================================================================
# ODDYSSEY
# =============================================================================

# Contract enums
MONEYLINE_NOT_SET, MONEYLINE_HOME_WIN, MONEYLINE_DRAW, MONEYLINE_AWAY_WIN = 0, 1, 2, 3
OVER_UNDER_NOT_SET, OVER_UNDER_OVER, OVER_UNDER_UNDER = 0, 1, 2
# A cancelled fixture is submitted with both fields unset
NOT_APPLICABLE_RESULT = (MONEYLINE_NOT_SET, OVER_UNDER_NOT_SET)

CYCLE_STATE_NAMES = {0: "NotStarted", 1: "Active", 2: "Ended", 3: "Resolved"}

ODDYSSEY_FUNCTIONS = {
    "getCurrentCycle": FunctionSpec("getCurrentCycle", (), ("uint256",)),
    "slipCount": FunctionSpec("slipCount", (), ("uint256",)),
    "getSlip": FunctionSpec("getSlip", ("uint256",), (SLIP_TYPE,)),
    "getDailySlipCount": FunctionSpec("getDailySlipCount", ("uint256",), ("uint256",)),
    "isCycleInitialized": FunctionSpec("isCycleInitialized", ("uint256",), ("bool",)),
    "cycleInfo": FunctionSpec(
        "cycleInfo",
        ("uint256",),
        ("uint256", "uint256", "uint256", "uint32", "uint32", "uint8", "bool"),
        ("startTime", "endTime", "prizePool", "slipCount", "evaluatedSlips", "state", "hasWinner"),
    ),
    "getDailyMatches": FunctionSpec("getDailyMatches", ("uint256",), (f"{MATCH_TYPE}[10]",)),
    "startDailyCycle": FunctionSpec("startDailyCycle", (f"{MATCH_TYPE}[10]",)),
    "resolveDailyCycle": FunctionSpec("resolveDailyCycle", ("uint256", f"{MATCH_RESULT_TYPE}[10]")),
}

ODDYSSEY_EVENTS = {
    "CycleStarted": _event(
        "CycleStarted",
        ("cycleId", "uint256", True),
        ("endTime", "uint256", False),
    ),
    "CycleResolved": _event(
        "CycleResolved",
        ("cycleId", "uint256", True),
        ("prizePool", "uint256", False),
    ),
    "SlipPlaced": _event(
        "SlipPlaced",
        ("cycleId", "uint256", True),
        ("player", "address", True),
        ("slipId", "uint256", True),
    ),
    "SlipEvaluated": _event(
        "SlipEvaluated",
        ("slipId", "uint256", True),
        ("player", "address", True),
        ("cycleId", "uint256", True),
        ("correctCount", "uint8", False),
        ("finalScore", "uint256", False),
    ),
    "PrizeClaimed": _event(
        "PrizeClaimed",
        ("cycleId", "uint256", True),
        ("player", "address", True),
        ("rank", "uint256", False),
        ("amount", "uint256", False),
    ),
}

# Logical contract name -> (functions, events)
CATALOGUE: Dict[str, Tuple[Dict[str, FunctionSpec], Dict[str, EventSpec]]] = {
    "PoolCore": (POOL_CORE_FUNCTIONS, POOL_CORE_EVENTS),
    "GuidedOracle": (GUIDED_ORACLE_FUNCTIONS, GUIDED_ORACLE_EVENTS),
    "Oddyssey": (ODDYSSEY_FUNCTIONS, ODDYSSEY_EVENTS),
}
