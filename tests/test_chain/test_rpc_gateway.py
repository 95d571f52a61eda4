"""Tests for the failover JSON-RPC gateway.

Test Strategy:
1. Test successful requests and hex decoding
2. Test failover on HTTP 5xx and transport errors
3. Test circuit breakers taking endpoints out of rotation
4. Test node-reported errors (range limits, reverts, nonce errors) are not retried
5. Test back-pressure shrinking the retry budget of non-priority callers

Each test follows the pattern:
- Given: A gateway over mocked endpoints (httpx.MockTransport)
- When: A JSON-RPC method is called
- Then: The right endpoint answers or the right exception is raised
"""
import json
from collections import Counter

import httpx
import pytest
from eth_abi import encode as abi_encode

from marketsync.chain.circuit_breaker import EndpointHealth, reset_breaker
from marketsync.chain.rpc_gateway import RpcGateway, decode_revert_reason
from marketsync.core.errors import (
    REVERT_ALREADY_SETTLED,
    REVERT_INSUFFICIENT_FUNDS,
    BlockRangeTooLarge,
    ContractRevert,
    RpcError,
    RpcUnavailable,
)
from marketsync.core.retry import NO_WAIT_POLICY

PRIMARY = "https://primary.rpc/"
FALLBACK = "https://fallback.rpc/"


async def no_sleep(_seconds):
    return None


def ok(result):
    return lambda payload: httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": result})


def node_error(code, message, data=None):
    def respond(payload):
        error = {"code": code, "message": message}
        if data is not None:
            error["data"] = data
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "error": error})
    return respond


def status(code):
    return lambda payload: httpx.Response(code, text="upstream error")


class MockEndpoints:
    """Routes requests by URL and counts calls per endpoint."""

    def __init__(self, **responders):
        self.responders = {PRIMARY: responders.get("primary"), FALLBACK: responders.get("fallback")}
        self.calls = Counter()
        self.methods = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        payload = json.loads(request.content)
        self.calls[url] += 1
        self.methods.append(payload["method"])
        responder = self.responders[url]
        if isinstance(responder, Exception):
            raise responder
        return responder(payload)

    def gateway(self, urls=(PRIMARY, FALLBACK), **kwargs) -> RpcGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        kwargs.setdefault("retry_policy", NO_WAIT_POLICY)
        return RpcGateway(list(urls), client=client, sleep=no_sleep, **kwargs)


class TestRpcGateway:
    """Failover, retries and error mapping."""

    # Happy Path Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_primary_answers(self):
        """Should use the primary endpoint and decode hex quantities."""
        endpoints = MockEndpoints(primary=ok("0x1b4"), fallback=ok("0x0"))
        gateway = endpoints.gateway()

        assert await gateway.get_block_number() == 436
        assert endpoints.calls[PRIMARY] == 1
        assert endpoints.calls[FALLBACK] == 0

    @pytest.mark.asyncio
    async def test_call_returns_bytes(self):
        """Should return eth_call data as bytes."""
        endpoints = MockEndpoints(primary=ok("0x" + "00" * 31 + "2a"))
        gateway = endpoints.gateway(urls=(PRIMARY,))

        data = await gateway.call({"to": "0x" + "11" * 20, "data": "0x"})

        assert data == b"\x00" * 31 + b"\x2a"

    @pytest.mark.asyncio
    async def test_get_logs_sends_hex_window(self):
        """Should send the block window as hex and return [] for a null result."""
        seen = {}

        def capture(payload):
            seen.update(payload["params"][0])
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": payload["id"], "result": None})

        gateway = MockEndpoints(primary=capture).gateway(urls=(PRIMARY,))

        logs = await gateway.get_logs(256, 511, "0x" + "11" * 20, [["0xabc"]])

        assert logs == []
        assert seen["fromBlock"] == "0x100"
        assert seen["toBlock"] == "0x1ff"
        assert seen["topics"] == [["0xabc"]]

    # Failover Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_fails_over_on_http_5xx(self):
        """Should retry the primary three times, then answer from the fallback."""
        endpoints = MockEndpoints(primary=status(503), fallback=ok("0xc4d8"))
        gateway = endpoints.gateway()

        assert await gateway.get_chain_id() == 50392
        assert endpoints.calls[PRIMARY] == NO_WAIT_POLICY.attempts_per_endpoint
        assert endpoints.calls[FALLBACK] == 1

    @pytest.mark.asyncio
    async def test_fails_over_on_transport_error(self):
        """Should treat connection errors as endpoint failures."""
        endpoints = MockEndpoints(primary=httpx.ConnectError("refused"), fallback=ok("0x10"))
        gateway = endpoints.gateway()

        assert await gateway.get_block_number() == 16

    @pytest.mark.asyncio
    async def test_all_endpoints_down_raises_unavailable(self):
        """Should raise RpcUnavailable once every endpoint and rotation is exhausted."""
        endpoints = MockEndpoints(primary=status(500), fallback=status(429))
        gateway = endpoints.gateway(fail_max=100)

        with pytest.raises(RpcUnavailable):
            await gateway.get_block_number()

        per_endpoint = NO_WAIT_POLICY.attempts_per_endpoint * NO_WAIT_POLICY.rotations
        assert endpoints.calls[PRIMARY] == per_endpoint
        assert endpoints.calls[FALLBACK] == per_endpoint

    @pytest.mark.asyncio
    async def test_http_4xx_is_not_retried(self):
        """Should raise RpcError for client errors without trying another endpoint."""
        endpoints = MockEndpoints(primary=status(401), fallback=ok("0x1"))
        gateway = endpoints.gateway()

        with pytest.raises(RpcError) as exc_info:
            await gateway.get_block_number()

        assert exc_info.value.code == 401
        assert endpoints.calls[FALLBACK] == 0

    # Circuit Breaker Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_open_breaker_skips_endpoint(self):
        """Should stop calling an endpoint once its breaker opens."""
        endpoints = MockEndpoints(primary=status(502), fallback=ok("0x5"))
        gateway = endpoints.gateway(fail_max=2)

        assert await gateway.get_block_number() == 5
        calls_after_trip = endpoints.calls[PRIMARY]
        assert calls_after_trip == 2
        assert gateway.health()[PRIMARY] == "open"

        assert await gateway.get_block_number() == 5
        assert endpoints.calls[PRIMARY] == calls_after_trip

    @pytest.mark.asyncio
    async def test_all_breakers_open_raises_without_calls(self):
        """Should raise RpcUnavailable immediately when no endpoint is available."""
        endpoints = MockEndpoints(primary=status(500))
        gateway = endpoints.gateway(urls=(PRIMARY,), fail_max=1)

        with pytest.raises(RpcUnavailable):
            await gateway.get_block_number()
        calls = endpoints.calls[PRIMARY]

        with pytest.raises(RpcUnavailable):
            await gateway.get_block_number()
        assert endpoints.calls[PRIMARY] == calls

    # Node Error Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_range_limit_raises_block_range_too_large(self):
        """Should map provider range-limit errors to BlockRangeTooLarge, once."""
        endpoints = MockEndpoints(primary=node_error(-32000, "query returned more than 10000 results"), fallback=ok([]))
        gateway = endpoints.gateway()

        with pytest.raises(BlockRangeTooLarge) as exc_info:
            await gateway.get_logs(100, 1099, "0x" + "11" * 20)

        assert exc_info.value.from_block == 100
        assert exc_info.value.to_block == 1099
        assert endpoints.calls[PRIMARY] == 1
        assert endpoints.calls[FALLBACK] == 0

    @pytest.mark.asyncio
    async def test_range_limit_with_limit_exceeded_code(self):
        """Should treat a -32005 range refusal as a window problem, not an endpoint failure."""
        refusal = node_error(-32005, "query returned more than 10000 results")
        endpoints = MockEndpoints(primary=refusal, fallback=refusal)
        gateway = endpoints.gateway()

        with pytest.raises(BlockRangeTooLarge) as exc_info:
            await gateway.get_logs(100000, 100500, "0x" + "11" * 20)

        assert (exc_info.value.from_block, exc_info.value.to_block) == (100000, 100500)
        assert endpoints.calls[PRIMARY] == 1
        assert endpoints.calls[FALLBACK] == 0
        assert gateway.health() == {PRIMARY: "closed", FALLBACK: "closed"}

    @pytest.mark.asyncio
    async def test_limit_exceeded_code_is_transient_elsewhere(self):
        endpoints = MockEndpoints(primary=node_error(-32005, "rate limit exceeded"), fallback=ok("0x10"))
        gateway = endpoints.gateway()

        assert await gateway.get_block_number() == 16
        assert endpoints.calls[FALLBACK] == 1

    @pytest.mark.asyncio
    async def test_revert_reason_is_decoded(self):
        """Should raise ContractRevert with the decoded Error(string) reason."""
        data = "0x08c379a0" + abi_encode(["string"], ["Pool already settled"]).hex()
        endpoints = MockEndpoints(primary=node_error(3, "execution reverted", data))
        gateway = endpoints.gateway(urls=(PRIMARY,))

        with pytest.raises(ContractRevert) as exc_info:
            await gateway.call({"to": "0x" + "11" * 20, "data": "0x"})

        assert "Pool already settled" in str(exc_info.value)
        assert exc_info.value.kind == REVERT_ALREADY_SETTLED
        assert exc_info.value.recoverable

    @pytest.mark.asyncio
    async def test_insufficient_funds_is_classified(self):
        """Should classify insufficient funds so callers can alert an operator."""
        endpoints = MockEndpoints(primary=node_error(-32000, "insufficient funds for gas * price + value"))
        gateway = endpoints.gateway(urls=(PRIMARY,))

        with pytest.raises(ContractRevert) as exc_info:
            await gateway.send_raw_transaction(b"\x01")

        assert exc_info.value.kind == REVERT_INSUFFICIENT_FUNDS

    @pytest.mark.asyncio
    async def test_nonce_too_low_is_retryable_rpc_error(self):
        """Should raise a retryable RpcError for nonce conflicts."""
        endpoints = MockEndpoints(primary=node_error(-32000, "nonce too low"))
        gateway = endpoints.gateway(urls=(PRIMARY,))

        with pytest.raises(RpcError) as exc_info:
            await gateway.send_raw_transaction(b"\x01")

        assert exc_info.value.retryable
        assert not isinstance(exc_info.value, ContractRevert)

    def test_decode_revert_reason_ignores_custom_errors(self):
        """Should return None for payloads that are not Error(string)."""
        assert decode_revert_reason("0xdeadbeef") is None
        assert decode_revert_reason(None) is None

    # Back-pressure Tests
    # ─────────────────────────────────────────────────────────────

    @pytest.mark.asyncio
    async def test_backpressure_shrinks_non_priority_budget(self):
        """Should halve attempts for normal callers but not for priority ones."""
        endpoints = MockEndpoints(primary=status(500))
        gateway = endpoints.gateway(urls=(PRIMARY,), fail_max=100)
        gateway.set_backpressure(True)

        with pytest.raises(RpcUnavailable):
            await gateway.get_chain_id()
        assert endpoints.calls[PRIMARY] == 1

        with pytest.raises(RpcUnavailable):
            await gateway.get_block_number(priority=True)
        assert endpoints.calls[PRIMARY] == 1 + NO_WAIT_POLICY.attempts_per_endpoint * NO_WAIT_POLICY.rotations

        gateway.set_backpressure(False)
        assert gateway.budget_factor == 1.0


class TestEndpointHealth:
    """Breaker windowing on top of pybreaker."""

    def test_failures_outside_window_do_not_accumulate(self):
        """Should restart the failure streak when the previous one is older than the window."""
        now = [0.0]
        health = EndpointHealth("https://x.rpc/", fail_max=3, failure_window=60, clock=lambda: now[0])

        health.record_failure(RuntimeError("a"))
        health.record_failure(RuntimeError("b"))
        now[0] = 120.0
        health.record_failure(RuntimeError("c"))

        assert health.state == "closed"
        assert health.breaker.fail_counter == 1

    def test_opens_after_consecutive_failures(self):
        """Should open after fail_max failures inside the window and report unavailable."""
        now = [0.0]
        health = EndpointHealth("https://y.rpc/", fail_max=3, reset_timeout=30, clock=lambda: now[0])

        for _ in range(3):
            health.record_failure(RuntimeError("down"))

        assert health.state == "open"
        assert not health.is_available()
        now[0] = 31.0
        assert health.is_available()

    def test_success_resets_streak(self):
        """Should clear the failure count on success."""
        health = EndpointHealth("https://z.rpc/", fail_max=3)
        health.record_failure(RuntimeError("blip"))
        health.record_success()

        assert health.breaker.fail_counter == 0
        assert health.snapshot()["total_successes"] == 1

    def test_manual_reset_closes_breaker(self):
        """Should close an open breaker on manual reset."""
        health = EndpointHealth("https://w.rpc/", fail_max=1)
        health.record_failure(RuntimeError("down"))
        assert health.state == "open"

        reset_breaker(health)

        assert health.state == "closed"
        assert health.is_available()
