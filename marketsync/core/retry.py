"""
Retry policies as data.

Outbound IO components (RPC gateway, results fetcher, transaction sender)
take a RetryPolicy value and build their tenacity retrying objects from it,
so backoff parameters live in one place instead of in decorators.
"""
from dataclasses import dataclass, replace
from typing import Any, Tuple, Type

from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    Attributes:
        base_delay: First backoff in seconds (doubles per attempt)
        max_delay: Backoff cap in seconds
        attempts_per_endpoint: Attempts against one endpoint before moving on
        rotations: Full passes through the endpoint list before giving up
    """

    base_delay: float = 0.5
    max_delay: float = 8.0
    attempts_per_endpoint: int = 3
    rotations: int = 2

    def scaled(self, factor: float) -> "RetryPolicy":
        """
        Shrink the attempt budget by `factor` (never below one attempt and one rotation).

        Used for back-pressure while the indexer is far behind the chain head.
        """
        if factor >= 1.0:
            return self
        return replace(
            self,
            attempts_per_endpoint=max(1, int(self.attempts_per_endpoint * factor)),
            rotations=max(1, int(self.rotations * factor)),
        )

    def backoff(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        if attempt <= 0:
            return 0.0
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    def retrying(self, retry_on: Tuple[Type[BaseException], ...], **overrides: Any) -> AsyncRetrying:
        """
        Build a tenacity AsyncRetrying for one endpoint.

        Args:
            retry_on: Exception types that trigger another attempt
            overrides: Extra AsyncRetrying kwargs (e.g. `sleep` in tests)
        """
        kwargs: dict[str, Any] = dict(
            stop=stop_after_attempt(self.attempts_per_endpoint),
            wait=wait_exponential(multiplier=self.base_delay, max=self.max_delay),
            retry=retry_if_exception_type(retry_on),
            reraise=True,
        )
        kwargs.update(overrides)
        return AsyncRetrying(**kwargs)


# Chain RPC: 500 ms base, 8 s cap, 3 attempts per endpoint, two rotations
RPC_RETRY_POLICY = RetryPolicy()

# External HTTP provider: 3 attempts, 1 s base, 10 s cap, single endpoint
HTTP_RETRY_POLICY = RetryPolicy(base_delay=1.0, max_delay=10.0, attempts_per_endpoint=3, rotations=1)

# No waiting, used by tests and one-shot CLI runs
NO_WAIT_POLICY = RetryPolicy(base_delay=0.0, max_delay=0.0)
