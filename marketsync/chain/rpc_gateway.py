"""
Multi-endpoint JSON-RPC client for the EVM chain.

Each request goes to the first healthy endpoint in priority order. Network
errors, timeouts, HTTP 5xx and 429 count as endpoint failures and are retried
with exponential backoff (3 attempts per endpoint, two passes over the list).
Errors the node reports inside a JSON-RPC response are not retried: range
limits become BlockRangeTooLarge, reverts become ContractRevert and anything
else an RpcError.
"""
import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from eth_abi import decode as abi_decode
from hexbytes import HexBytes

from marketsync.chain.circuit_breaker import (
    DEFAULT_FAIL_MAX,
    DEFAULT_FAILURE_WINDOW,
    DEFAULT_RESET_TIMEOUT,
    EndpointHealth,
    get_all_breaker_states,
)
from marketsync.core.errors import (
    BlockRangeTooLarge,
    ContractRevert,
    RpcError,
    RpcUnavailable,
    TransientRpcError,
    REVERT_INSUFFICIENT_FUNDS,
)
from marketsync.core.logging import get_logger
from marketsync.core.metrics import record_rpc_request
from marketsync.core.retry import RPC_RETRY_POLICY, RetryPolicy

logger = get_logger(__name__)

# Provider wording for eth_getLogs window limits
RANGE_LIMIT_HINTS = (
    "range limit",
    "block range",
    "query returned more than",
    "too many",
    "limit exceeded",
    "exceed maximum",
    "response size",
    "range is too large",
)

# Error(string) selector used by require/revert messages
_ERROR_STRING_SELECTOR = bytes.fromhex("08c379a0")

_TRANSIENT_RPC_CODES = {-32005, -32603}  # limit exceeded / internal error


class _EndpointTripped(Exception):
    """The endpoint's breaker opened mid-retry; move on to the next endpoint."""


def decode_revert_reason(data: Any) -> Optional[str]:
    """Decode the Error(string) payload a node attaches to a revert, if any."""
    if not isinstance(data, str) or not data.startswith("0x"):
        return None
    raw = HexBytes(data)
    if raw[:4] != _ERROR_STRING_SELECTOR:
        return None
    try:
        return abi_decode(["string"], bytes(raw[4:]))[0]
    except Exception:
        return None


def _to_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    return int(value, 16)


class RpcGateway:
    """
    Failover JSON-RPC client.

    Attributes:
        endpoints: Per-endpoint health in priority order
        retry_policy: Backoff and attempt budget
        budget_factor: 1.0 normally, 0.5 while the indexer is far behind
    """

    def __init__(
        self,
        urls: Sequence[str],
        timeout: float = 15.0,
        retry_policy: RetryPolicy = RPC_RETRY_POLICY,
        client: Optional[httpx.AsyncClient] = None,
        fail_max: int = DEFAULT_FAIL_MAX,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        failure_window: float = DEFAULT_FAILURE_WINDOW,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if not urls:
            raise ValueError("At least one RPC endpoint is required")
        self.endpoints = [
            EndpointHealth(url, fail_max=fail_max, reset_timeout=reset_timeout, failure_window=failure_window)
            for url in urls
        ]
        self.timeout = timeout
        self.retry_policy = retry_policy
        self.budget_factor = 1.0
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=20),
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self):
        """Close the HTTP client."""
        if self._client and self._owns_client:
            await self._client.aclose()
        self._client = None

    def set_backpressure(self, active: bool) -> None:
        """Halve the retry budget of non-priority callers while active."""
        factor = 0.5 if active else 1.0
        if factor != self.budget_factor:
            logger.warning(f"⚠️ RPC back-pressure {'ON' if active else 'OFF'}")
        self.budget_factor = factor

    def health(self) -> Dict[str, str]:
        return get_all_breaker_states(self.endpoints)

    # ========================================================================
    # Transport
    # ========================================================================

    async def request(self, method: str, params: List[Any], priority: bool = False) -> Any:
        """
        Send one JSON-RPC request with failover.

        Args:
            method: JSON-RPC method name
            params: Positional params
            priority: Ignore back-pressure (used by the indexer itself)

        Raises:
            RpcUnavailable: No healthy endpoint or retry budget exhausted
            BlockRangeTooLarge: eth_getLogs window refused by the provider
            ContractRevert: Call or transaction reverted
            RpcError: Any other node-reported error
        """
        policy = self.retry_policy if priority else self.retry_policy.scaled(self.budget_factor)
        last_error: Optional[Exception] = None

        for rotation in range(policy.rotations):
            candidates = [endpoint for endpoint in self.endpoints if endpoint.is_available()]
            if not candidates:
                break

            for endpoint in candidates:
                try:
                    async for attempt in policy.retrying((TransientRpcError,), sleep=self._sleep):
                        with attempt:
                            return await self._send(endpoint, method, params)
                except (TransientRpcError, _EndpointTripped) as exc:
                    last_error = exc
                    logger.warning(
                        f"RPC {method} failed on {endpoint.url} "
                        f"(rotation {rotation + 1}/{policy.rotations}): {exc}"
                    )

        if last_error is None:
            raise RpcUnavailable()
        raise RpcUnavailable(f"All RPC endpoints failed for {method}: {last_error}")

    async def _send(self, endpoint: EndpointHealth, method: str, params: List[Any]) -> Any:
        if not endpoint.is_available():
            raise _EndpointTripped(f"{endpoint.url} circuit open")

        client = await self._get_client()
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

        try:
            response = await client.post(endpoint.url, json=payload)
        except httpx.TransportError as exc:
            self._fail(endpoint, method, TransientRpcError(f"{type(exc).__name__}: {exc}"))

        status = response.status_code
        if status == 429 or status >= 500:
            self._fail(endpoint, method, TransientRpcError(f"HTTP {status} from {endpoint.url}", code=status))
        if status >= 400:
            endpoint.record_success()
            record_rpc_request(endpoint.url, method, "http_error")
            raise RpcError(f"HTTP {status} from {endpoint.url}", retryable=False, code=status)

        try:
            body = response.json()
        except ValueError:
            self._fail(endpoint, method, TransientRpcError(f"Invalid JSON from {endpoint.url}"))

        error = body.get("error") if isinstance(body, dict) else None
        if error:
            self._raise_node_error(endpoint, method, params, error)

        endpoint.record_success()
        record_rpc_request(endpoint.url, method, "ok")
        return body.get("result")

    def _fail(self, endpoint: EndpointHealth, method: str, error: TransientRpcError) -> None:
        """Record a transport failure and raise the right exception for the retry loop."""
        endpoint.record_failure(error)
        record_rpc_request(endpoint.url, method, "transient")
        if not endpoint.is_available():
            raise _EndpointTripped(str(error))
        raise error

    def _raise_node_error(self, endpoint: EndpointHealth, method: str, params: List[Any], error: Dict) -> None:
        message = str(error.get("message", ""))
        code = error.get("code")
        lowered = message.lower()

        # Range refusals share -32005 with rate limiting; the window is at fault, not the node
        if method == "eth_getLogs" and any(hint in lowered for hint in RANGE_LIMIT_HINTS):
            endpoint.record_success()
            record_rpc_request(endpoint.url, method, "range_limit")
            window = params[0] if params and isinstance(params[0], dict) else {}
            raise BlockRangeTooLarge(
                message,
                from_block=_to_int(window["fromBlock"]) if "fromBlock" in window else None,
                to_block=_to_int(window["toBlock"]) if "toBlock" in window else None,
            )

        if code in _TRANSIENT_RPC_CODES and "revert" not in lowered:
            self._fail(endpoint, method, TransientRpcError(f"RPC {code}: {message}", code=code))

        # The node answered; the endpoint itself is healthy
        endpoint.record_success()

        if "insufficient funds" in lowered:
            record_rpc_request(endpoint.url, method, "revert")
            raise ContractRevert(message, kind=REVERT_INSUFFICIENT_FUNDS)

        if code == 3 or "revert" in lowered:
            record_rpc_request(endpoint.url, method, "revert")
            reason = decode_revert_reason(error.get("data"))
            raise ContractRevert(f"{message}: {reason}" if reason else message)

        record_rpc_request(endpoint.url, method, "error")
        retryable = "nonce too low" in lowered or "already known" in lowered
        raise RpcError(message, retryable=retryable, code=code)

    # ========================================================================
    # Chain methods
    # ========================================================================

    async def get_block_number(self, priority: bool = False) -> int:
        return _to_int(await self.request("eth_blockNumber", [], priority=priority))

    async def get_chain_id(self) -> int:
        return _to_int(await self.request("eth_chainId", []))

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: str | List[str],
        topics: Optional[List[Any]] = None,
        priority: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Fetch logs for an inclusive block window.

        Raises:
            BlockRangeTooLarge: The provider refused the window
        """
        flt: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block), "address": address}
        if topics:
            flt["topics"] = topics
        result = await self.request("eth_getLogs", [flt], priority=priority)
        return result or []

    async def call(self, tx: Dict[str, Any], block: str = "latest") -> bytes:
        result = await self.request("eth_call", [tx, block])
        return bytes(HexBytes(result or "0x"))

    async def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return _to_int(await self.request("eth_estimateGas", [tx]))

    async def get_gas_price(self) -> int:
        return _to_int(await self.request("eth_gasPrice", []))

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        return _to_int(await self.request("eth_getTransactionCount", [address, block]))

    async def send_raw_transaction(self, raw: bytes) -> str:
        return await self.request("eth_sendRawTransaction", ["0x" + bytes(raw).hex()])

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        """Receipt dict, or None while the transaction is pending."""
        return await self.request("eth_getTransactionReceipt", [tx_hash])
