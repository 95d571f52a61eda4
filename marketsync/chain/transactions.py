"""
Signed write transactions from the oracle-bot key.

Every write goes through one TransactionSender so nonce allocation is
serialised on a single asyncio lock. Gas is estimated with a buffer; when
estimation reverts for an unclassified reason the per-function limit table
is used instead. Receipts with status=0 raise TransactionFailed.
"""
import asyncio
import time
from typing import Any, Awaitable, Callable, Dict, Optional

from eth_account import Account

from marketsync.chain.contracts import ContractRegistry
from marketsync.core.errors import (
    REVERT_OTHER,
    ContractRevert,
    RpcError,
    TransactionFailed,
)
from marketsync.core.logging import get_logger

logger = get_logger(__name__)

GWEI = 10 ** 9

# Used when eth_estimateGas reverts without a recognisable reason
FALLBACK_GAS_LIMITS = {
    "submitOutcome": 500_000,
    "settlePool": 800_000,
    "settlePoolAutomatically": 800_000,
    "refundPool": 600_000,
    "startDailyCycle": 3_000_000,
    "resolveDailyCycle": 2_000_000,
}
DEFAULT_FALLBACK_GAS_LIMIT = 1_000_000

NONCE_RETRIES = 3


def receipt_status(receipt: Dict[str, Any]) -> int:
    status = receipt.get("status")
    if isinstance(status, str):
        return int(status, 16)
    return int(status or 0)


def receipt_block(receipt: Dict[str, Any]) -> Optional[int]:
    block = receipt.get("blockNumber")
    if block is None:
        return None
    return int(block, 16) if isinstance(block, str) else int(block)


class NonceManager:
    """Hands out sequential nonces, re-syncing from the pending count when the node disagrees."""

    def __init__(self, gateway, address: str):
        self.gateway = gateway
        self.address = address
        self.lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    async def next_nonce(self) -> int:
        """Caller must hold `lock`."""
        chain_nonce = await self.gateway.get_transaction_count(self.address, "pending")
        if self._next_nonce is None or self._next_nonce < chain_nonce:
            self._next_nonce = chain_nonce
        nonce = self._next_nonce
        self._next_nonce += 1
        return nonce

    def reset(self) -> None:
        self._next_nonce = None


class TransactionSender:
    """
    Builds, signs and sends contract writes.

    Attributes:
        address: The oracle-bot address derived from the private key
    """

    def __init__(
        self,
        gateway,
        registry: ContractRegistry,
        private_key: str,
        chain_id: int,
        gas_buffer_percent: int = 20,
        gas_price_multiplier: float = 1.10,
        fallback_gas_price_gwei: int = 20,
        receipt_timeout: float = 120,
        receipt_poll_interval: float = 2.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.gateway = gateway
        self.registry = registry
        self.chain_id = chain_id
        self.gas_buffer_percent = gas_buffer_percent
        self.gas_price_multiplier = gas_price_multiplier
        self.fallback_gas_price = fallback_gas_price_gwei * GWEI
        self.receipt_timeout = receipt_timeout
        self.receipt_poll_interval = receipt_poll_interval
        self._sleep = sleep
        self._account = Account.from_key(private_key)
        self.address = self._account.address
        self.nonces = NonceManager(gateway, self.address)

    async def simulate(self, contract: str, fn: str, *args: Any) -> bytes:
        """
        eth_call the write from the bot address without sending it.

        Raises:
            ContractRevert: The contract would revert
        """
        tx = self.registry.build_call(contract, fn, *args, sender=self.address)
        return await self.gateway.call(tx, "latest")

    async def estimate_gas(self, fn: str, tx: Dict[str, Any]) -> int:
        """Estimated gas plus the buffer, or the fallback table on an unclassified revert."""
        try:
            estimate = await self.gateway.estimate_gas(tx)
        except ContractRevert as exc:
            if exc.kind != REVERT_OTHER:
                raise
            limit = FALLBACK_GAS_LIMITS.get(fn, DEFAULT_FALLBACK_GAS_LIMIT)
            logger.warning(f"⚠️ Gas estimation for {fn} reverted ({exc}); using fallback limit {limit}")
            return limit
        return estimate * (100 + self.gas_buffer_percent) // 100

    async def gas_price(self) -> int:
        """max(node price x multiplier, fallback floor)."""
        base = await self.gateway.get_gas_price()
        return max(int(base * self.gas_price_multiplier), self.fallback_gas_price)

    async def send(self, contract: str, fn: str, *args: Any) -> Dict[str, Any]:
        """
        Sign and send a contract write, then wait for the receipt.

        Returns:
            The mined receipt (status=1)

        Raises:
            ContractRevert: Estimation reverted with a classified reason
            TransactionFailed: Mined with status=0
            RpcError: Send or receipt polling failed
        """
        tx_hash = await self._sign_and_send(contract, fn, *args)
        logger.info(f"📤 Sent {contract}.{fn} tx {tx_hash}")
        receipt = await self.wait_for_receipt(tx_hash)
        if receipt_status(receipt) != 1:
            raise TransactionFailed(tx_hash, f"{contract}.{fn} reverted on-chain (tx {tx_hash})")
        logger.info(f"✅ {contract}.{fn} mined in block {receipt_block(receipt)} (tx {tx_hash})")
        return receipt

    async def _sign_and_send(self, contract: str, fn: str, *args: Any) -> str:
        call = self.registry.build_call(contract, fn, *args, sender=self.address)

        async with self.nonces.lock:
            gas = await self.estimate_gas(fn, call)
            gas_price = await self.gas_price()

            last_error: Optional[RpcError] = None
            for _ in range(NONCE_RETRIES):
                nonce = await self.nonces.next_nonce()
                tx = {
                    "to": call["to"],
                    "data": call["data"],
                    "value": 0,
                    "gas": gas,
                    "gasPrice": gas_price,
                    "nonce": nonce,
                    "chainId": self.chain_id,
                }
                signed = self._account.sign_transaction(tx)
                try:
                    return await self.gateway.send_raw_transaction(signed.raw_transaction)
                except RpcError as exc:
                    if not exc.retryable:
                        raise
                    message = str(exc).lower()
                    if "already known" in message:
                        # Same signed payload is already in the mempool
                        return "0x" + bytes(signed.hash).hex()
                    if "nonce too low" not in message:
                        raise
                    last_error = exc
                    logger.warning(f"⚠️ Nonce {nonce} rejected ({exc}); re-syncing from chain")
                    self.nonces.reset()

            raise last_error

    async def wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        """
        Poll for a receipt until it is mined or the timeout expires.

        Raises:
            RpcError: No receipt within the timeout (retryable)
        """
        deadline = time.monotonic() + self.receipt_timeout
        while True:
            receipt = await self.gateway.get_transaction_receipt(tx_hash)
            if receipt is not None:
                return receipt
            if time.monotonic() >= deadline:
                raise RpcError(f"No receipt for {tx_hash} after {self.receipt_timeout}s", retryable=True)
            await self._sleep(self.receipt_poll_interval)
