"""
Contract registry.

Maps logical contract names ("PoolCore", "GuidedOracle", "Oddyssey") to their
configured addresses and ABI entries, and owns every conversion between
Python values and chain encodings: calldata, return data, event logs and
the bytes32 <-> text packing used for pool metadata.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from hexbytes import HexBytes
from web3 import Web3

from marketsync.chain.abi import CATALOGUE, EventSpec, FunctionSpec
from marketsync.core.errors import ConfigurationError
from marketsync.core.logging import get_logger

logger = get_logger(__name__)

ZERO_BYTES32 = b"\x00" * 32


def to_hex(value: Any) -> str:
    """0x-prefixed lowercase hex for bytes-like values (hex strings pass through)."""
    if isinstance(value, str):
        return "0x" + bytes(HexBytes(value)).hex()
    return "0x" + bytes(value).hex()


def bytes32_to_str(value: Any) -> str:
    """
    Decode a packed bytes32 text field.

    Trailing zero bytes are dropped; undecodable input yields "" (never raises).
    """
    try:
        raw = bytes(HexBytes(value)) if isinstance(value, str) else bytes(value)
        return raw.rstrip(b"\x00").decode("utf-8")
    except (UnicodeDecodeError, ValueError, TypeError):
        return ""


def str_to_bytes32(text: str) -> bytes:
    """
    Pack text into bytes32 (UTF-8, right-padded with zeros).

    Raises:
        ValueError: Text longer than 32 bytes once encoded
    """
    raw = text.encode("utf-8")
    if len(raw) > 32:
        raise ValueError(f"'{text}' does not fit in bytes32 ({len(raw)} bytes)")
    return raw.ljust(32, b"\x00")


def keccak_text(text: str) -> str:
    return to_hex(Web3.keccak(text=text))


def market_id_hash(market_id: str) -> str:
    """Topic value of an indexed `string marketId` event parameter."""
    return keccak_text(market_id)


def outcome_hash(result_data: bytes) -> bytes:
    """keccak256 of the oracle result bytes, as passed to settlePool."""
    return bytes(Web3.keccak(bytes(result_data)))


def normalize_address(address: str) -> str:
    return address.lower() if address else address


def unix_to_datetime(timestamp: int) -> datetime:
    """Naive UTC datetime for a chain timestamp (the DB stores naive UTC)."""
    return datetime.fromtimestamp(int(timestamp), tz=timezone.utc).replace(tzinfo=None)


def datetime_to_unix(value: datetime) -> int:
    """Unix seconds for a naive UTC datetime."""
    return int(value.replace(tzinfo=timezone.utc).timestamp())


@dataclass(frozen=True)
class DecodedEvent:
    """A log decoded against the catalogue."""

    contract: str
    name: str
    args: Dict[str, Any]
    address: str
    block_number: int
    transaction_hash: str
    log_index: int

    @property
    def position(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


def _log_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class ContractRegistry:
    """
    Logical name -> address and ABI.

    Contracts without a configured address are simply absent; asking for
    one raises ConfigurationError.
    """

    def __init__(self, addresses: Mapping[str, str], catalogue=CATALOGUE):
        self._addresses = {name: addr for name, addr in addresses.items() if addr}
        self._catalogue = catalogue
        self._by_address = {normalize_address(addr): name for name, addr in self._addresses.items()}

    def has(self, contract: str) -> bool:
        return contract in self._addresses

    def address(self, contract: str) -> str:
        try:
            return self._addresses[contract]
        except KeyError:
            raise ConfigurationError(f"No address configured for contract {contract}") from None

    def name_for(self, address: str) -> Optional[str]:
        return self._by_address.get(normalize_address(address))

    def function(self, contract: str, fn: str) -> FunctionSpec:
        try:
            return self._catalogue[contract][0][fn]
        except KeyError:
            raise ConfigurationError(f"Unknown function {contract}.{fn}") from None

    def event(self, contract: str, name: str) -> EventSpec:
        try:
            return self._catalogue[contract][1][name]
        except KeyError:
            raise ConfigurationError(f"Unknown event {contract}.{name}") from None

    def events(self, contract: str) -> Dict[str, EventSpec]:
        return dict(self._catalogue.get(contract, ({}, {}))[1])

    # ------------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------------

    def encode_call(self, contract: str, fn: str, *args: Any) -> str:
        return to_hex(self.function(contract, fn).encode(*args))

    def build_call(self, contract: str, fn: str, *args: Any, sender: Optional[str] = None) -> Dict[str, Any]:
        """eth_call / eth_estimateGas transaction object."""
        tx = {"to": self.address(contract), "data": self.encode_call(contract, fn, *args)}
        if sender:
            tx["from"] = sender
        return tx

    def decode_result(self, contract: str, fn: str, data: bytes) -> Any:
        """
        Decode return data.

        A single return value is unwrapped; functions with named outputs
        come back as a dict.
        """
        spec = self.function(contract, fn)
        values = spec.decode(data)
        if spec.output_names:
            return dict(zip(spec.output_names, values))
        if len(values) == 1:
            return values[0]
        return values

    async def read(self, gateway, contract: str, fn: str, *args: Any, block: str = "latest") -> Any:
        """Call a view function through the gateway and decode the result."""
        data = await gateway.call(self.build_call(contract, fn, *args), block)
        return self.decode_result(contract, fn, data)

    # ------------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------------

    def event_topics(self, contract: str, names: Optional[Iterable[str]] = None) -> List[str]:
        """topic0 values for the contract's events (all of them by default)."""
        events = self.events(contract)
        wanted = list(names) if names is not None else list(events)
        return [self.event(contract, name).topic for name in wanted]

    def decode_log(self, log: Mapping[str, Any]) -> Optional[DecodedEvent]:
        """
        Decode a raw eth_getLogs entry.

        Returns None for logs from unknown addresses or with unknown topics.
        Raises ValueError when a known event's payload does not decode.
        """
        contract = self.name_for(log.get("address", ""))
        topics = [HexBytes(t) for t in log.get("topics", [])]
        if contract is None or not topics:
            return None

        topic0 = to_hex(topics[0])
        for name, spec in self.events(contract).items():
            if spec.topic == topic0:
                args = spec.decode(topics, HexBytes(log.get("data", "0x")))
                return DecodedEvent(
                    contract=contract,
                    name=name,
                    args=args,
                    address=normalize_address(log["address"]),
                    block_number=_log_int(log["blockNumber"]),
                    transaction_hash=to_hex(log["transactionHash"]),
                    log_index=_log_int(log["logIndex"]),
                )
        return None

    def decode_receipt_events(self, receipt: Mapping[str, Any], contract: str, name: str) -> List[DecodedEvent]:
        """Events of one type emitted in a transaction receipt."""
        decoded = []
        for log in receipt.get("logs", []):
            event = self.decode_log(log)
            if event is not None and event.contract == contract and event.name == name:
                decoded.append(event)
        return decoded
