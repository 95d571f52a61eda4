"""
Per-endpoint circuit breakers for the RPC gateway.

Uses pybreaker for the breaker state machine:
- CLOSED: requests pass through normally
- OPEN: endpoint is out of rotation (after fail_max consecutive failures)
- HALF_OPEN: after reset_timeout one probe request decides whether it closes

pybreaker only counts consecutive failures; the 60 s window is enforced here
by resetting a stale failure streak before recording a new failure. The
gateway performs the async request itself and reports the outcome through
`record_success` / `record_failure`, which drive the breaker synchronously.
"""
import time
from typing import Callable, Optional

import pybreaker
from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener

from marketsync.core.logging import get_logger
from marketsync.core.metrics import set_endpoint_health

logger = get_logger(__name__)

DEFAULT_FAIL_MAX = 5  # Consecutive failures before opening
DEFAULT_RESET_TIMEOUT = 30  # Seconds before a half-open probe
DEFAULT_FAILURE_WINDOW = 60  # Failures older than this do not count toward fail_max


class _StateChangeListener(CircuitBreakerListener):
    """Records when the breaker opened and mirrors the state to metrics and logs."""

    def __init__(self, health: "EndpointHealth"):
        self.health = health

    def state_change(self, cb, old_state, new_state):
        new_name = getattr(new_state, "name", str(new_state))
        old_name = getattr(old_state, "name", str(old_state))
        if new_name == pybreaker.STATE_OPEN:
            self.health.opened_at = self.health.clock()
            logger.warning(f"⚠️ RPC endpoint {cb.name} circuit OPEN after {cb.fail_counter} failures")
        elif new_name == pybreaker.STATE_CLOSED and old_name != pybreaker.STATE_CLOSED:
            logger.info(f"✅ RPC endpoint {cb.name} circuit CLOSED")
        set_endpoint_health(cb.name, new_name != pybreaker.STATE_OPEN)


class EndpointHealth:
    """
    Health tracking for one RPC endpoint.

    Attributes:
        url: Endpoint URL (also the breaker name)
        breaker: The pybreaker circuit breaker
        opened_at: Clock value when the breaker last opened
    """

    def __init__(
        self,
        url: str,
        fail_max: int = DEFAULT_FAIL_MAX,
        reset_timeout: float = DEFAULT_RESET_TIMEOUT,
        failure_window: float = DEFAULT_FAILURE_WINDOW,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = url
        self.failure_window = failure_window
        self.clock = clock
        self.opened_at: Optional[float] = None
        self._streak_started_at: Optional[float] = None
        self.total_failures = 0
        self.total_successes = 0
        self.breaker = CircuitBreaker(
            fail_max=fail_max,
            reset_timeout=reset_timeout,
            name=url,
            listeners=[_StateChangeListener(self)],
        )
        set_endpoint_health(url, True)

    @property
    def state(self) -> str:
        return self.breaker.current_state

    def is_available(self) -> bool:
        """Closed, half-open, or open long enough that a probe is due."""
        if self.breaker.current_state != pybreaker.STATE_OPEN:
            return True
        if self.opened_at is None:
            return False
        return self.clock() - self.opened_at >= self.breaker.reset_timeout

    def record_success(self) -> None:
        self.total_successes += 1
        self._streak_started_at = None
        try:
            self.breaker.call(lambda: None)
        except CircuitBreakerError:
            # Probe not yet permitted by pybreaker's own clock; stays open
            pass

    def record_failure(self, error: Exception) -> None:
        self.total_failures += 1
        now = self.clock()

        if self.breaker.current_state == pybreaker.STATE_CLOSED:
            stale = (
                self._streak_started_at is not None
                and now - self._streak_started_at > self.failure_window
            )
            if stale and self.breaker.fail_counter:
                # Streak outside the window: start counting again
                self.breaker.close()
            if stale or self._streak_started_at is None or not self.breaker.fail_counter:
                self._streak_started_at = now

        def _fail():
            raise error

        try:
            self.breaker.call(_fail)
        except CircuitBreakerError:
            pass
        except Exception as exc:
            if exc is not error:
                raise

    def snapshot(self) -> dict:
        return {
            "state": self.state,
            "fail_counter": self.breaker.fail_counter,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
        }


def get_all_breaker_states(endpoints: list[EndpointHealth]) -> dict[str, str]:
    """
    Get the current state of every endpoint breaker.

    Returns:
        Dictionary mapping endpoint URLs to 'closed', 'open' or 'half-open'
    """
    return {endpoint.url: endpoint.state for endpoint in endpoints}


def reset_breaker(endpoint: EndpointHealth) -> None:
    """
    Manually close an endpoint's breaker.

    Use with caution - only reset if you know the endpoint has recovered.
    """
    endpoint.breaker.close()
    endpoint.opened_at = None
    logger.warning(f"Circuit breaker '{endpoint.url}' manually reset to CLOSED state")
