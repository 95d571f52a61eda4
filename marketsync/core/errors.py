"""
Error taxonomy for the chain sync services.

Transient failures are retried inside the component that hit them and only
surface once the retry budget is exhausted. Range limits trigger adaptive
behaviour. Recoverable contract reverts are state signals. Fatal errors
propagate to the scheduler, which turns them into operator alerts.
"""
from typing import Optional


class MarketSyncError(Exception):
    """Base class for all service errors."""


class ConfigurationError(MarketSyncError):
    """Missing env var, malformed address or unreachable dependency at startup."""


class FatalServiceError(MarketSyncError):
    """Error that must stop the service and alert an operator."""


class DataInconsistency(MarketSyncError):
    """Indexed data violates a referential invariant (e.g. a bet for an unknown pool)."""


class InsufficientFixtures(MarketSyncError):
    """Fewer eligible fixtures than the cycle requires."""

    def __init__(self, found: int, required: int):
        super().__init__(f"Only {found} eligible fixtures, {required} required")
        self.found = found
        self.required = required


# =============================================================================
# RPC ERRORS
# =============================================================================

class RpcError(MarketSyncError):
    """JSON-RPC failure. `retryable` tells callers whether another tick may succeed."""

    def __init__(self, message: str, retryable: bool = False, code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.code = code


class RpcUnavailable(RpcError):
    """Every configured endpoint is unhealthy or the retry budget is exhausted."""

    def __init__(self, message: str = "All RPC endpoints are unavailable"):
        super().__init__(message, retryable=True)


class BlockRangeTooLarge(RpcError):
    """Provider refused an eth_getLogs window; callers should shrink the range."""

    def __init__(self, message: str, from_block: Optional[int] = None, to_block: Optional[int] = None):
        super().__init__(message, retryable=False)
        self.from_block = from_block
        self.to_block = to_block


class TransientRpcError(RpcError):
    """Network error, timeout, HTTP 5xx or 429. Retried by the gateway."""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message, retryable=True, code=code)


# =============================================================================
# CONTRACT REVERTS
# =============================================================================

REVERT_ALREADY_SETTLED = "already_settled"
REVERT_OUTCOME_EXISTS = "outcome_already_exists"
REVERT_EVENT_NOT_ENDED = "event_not_ended"
REVERT_OUTCOME_NOT_SET = "outcome_not_set"
REVERT_UNAUTHORIZED = "unauthorized"
REVERT_UNKNOWN_SELECTOR = "unknown_selector"
REVERT_INSUFFICIENT_FUNDS = "insufficient_funds"
REVERT_OTHER = "other"

RECOVERABLE_REVERTS = {
    REVERT_ALREADY_SETTLED,
    REVERT_OUTCOME_EXISTS,
    REVERT_EVENT_NOT_ENDED,
    REVERT_OUTCOME_NOT_SET,
}
FATAL_REVERTS = {REVERT_UNAUTHORIZED, REVERT_UNKNOWN_SELECTOR}

# Ordered: first match wins
_REVERT_PATTERNS = (
    (REVERT_INSUFFICIENT_FUNDS, ("insufficient funds", "insufficient balance for transfer")),
    (REVERT_ALREADY_SETTLED, ("already settled", "pool settled", "alreadysettled")),
    (REVERT_OUTCOME_EXISTS, ("outcome already", "already submitted", "already set", "outcomealreadyexists")),
    (REVERT_EVENT_NOT_ENDED, ("event not ended", "not ended", "too early", "eventnotended")),
    (REVERT_OUTCOME_NOT_SET, ("outcome not set", "outcome not available", "no outcome", "outcomenotset")),
    (REVERT_UNAUTHORIZED, ("only oracle", "not authorized", "unauthorized", "caller is not", "onlyoracle")),
    (REVERT_UNKNOWN_SELECTOR, ("function selector was not recognized", "unknown selector", "no fallback")),
)


def classify_revert(message: str) -> str:
    """
    Map a node's revert message to a revert kind.

    Args:
        message: Raw error message returned by the node

    Returns:
        One of the REVERT_* constants
    """
    lowered = (message or "").lower().replace("_", " ")
    for kind, needles in _REVERT_PATTERNS:
        if any(needle in lowered for needle in needles):
            return kind
    return REVERT_OTHER


class ContractRevert(MarketSyncError):
    """A call or transaction reverted in the contract."""

    def __init__(self, message: str, kind: Optional[str] = None):
        super().__init__(message)
        self.kind = kind or classify_revert(message)

    @property
    def recoverable(self) -> bool:
        return self.kind in RECOVERABLE_REVERTS

    @property
    def fatal(self) -> bool:
        return self.kind in FATAL_REVERTS


class TransactionFailed(MarketSyncError):
    """A mined transaction came back with status=0."""

    def __init__(self, tx_hash: str, message: str = ""):
        super().__init__(message or f"Transaction {tx_hash} failed (status=0)")
        self.tx_hash = tx_hash


class OperatorAlert(MarketSyncError):
    """Needs human attention (e.g. the bot wallet ran out of gas) but the service keeps running."""


# =============================================================================
# EXTERNAL PROVIDER ERRORS
# =============================================================================

class ProviderError(MarketSyncError):
    """Sports-data provider request failed permanently (4xx, unparseable body)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Network error, timeout, HTTP 5xx or 429 from the provider. Retried with backoff."""
