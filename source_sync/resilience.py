"""Retry and circuit-breaker bookkeeping for polled HTTP endpoints.

Each endpoint (``METHOD:url``) gets its own breaker in a
:class:`CircuitBreakerRegistry`.  The breaker moves through three states:

  CLOSED    -> calls pass through; failures below the threshold are
               retried after a jittered delay
  OPEN      -> calls are rejected locally for an adaptive timeout that
               doubles on every re-opening, up to a ceiling
  HALF_OPEN -> a bounded number of probe calls are let through; the first
               result decides between CLOSED and a longer OPEN period

Unlike a decorator-style breaker, callers drive it explicitly with
:meth:`CircuitBreaker.before_call`, :meth:`CircuitBreaker.record_success`
and :meth:`CircuitBreaker.record_failure` so the polling engine can turn
each state into source content and a next-attempt delay.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from source_sync.errors import CircuitOpenError

logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ── Default Constants ────────────────────────────────────────────────

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_BASE_TIMEOUT = 30.0  # seconds
DEFAULT_MAX_TIMEOUT = 3600.0  # seconds
DEFAULT_BACKOFF_MULTIPLIER = 2.0
DEFAULT_TIMEOUT_JITTER = 0.1  # fraction of the timeout
DEFAULT_HALF_OPEN_MAX_CALLS = 3
DEFAULT_RETRY_BASE_DELAY = 5.0  # seconds
DEFAULT_RETRY_MAX_JITTER = 5.0  # seconds


@dataclass
class CircuitBreakerConfig:
    """Configuration for an adaptive circuit breaker."""

    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD
    base_timeout: float = DEFAULT_BASE_TIMEOUT
    max_timeout: float = DEFAULT_MAX_TIMEOUT
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    timeout_jitter: float = DEFAULT_TIMEOUT_JITTER
    half_open_max_calls: int = DEFAULT_HALF_OPEN_MAX_CALLS


@dataclass
class RetryConfig:
    """Delay applied between failures while the breaker is still closed."""

    base_delay: float = DEFAULT_RETRY_BASE_DELAY
    jitter_max: float = DEFAULT_RETRY_MAX_JITTER


def compute_retry_delay(config: RetryConfig) -> float:
    """Return the jittered pre-breaker retry delay in seconds."""
    return config.base_delay + random.uniform(0, config.jitter_max)


class CircuitBreaker:
    """Adaptive circuit breaker for a single endpoint.

    All methods are called from the event loop, so no locking is needed.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._open_count = 0
        self._opened_at = 0.0
        self._open_timeout = 0.0
        self._half_open_calls = 0
        self._rejected_calls = 0

    # ---- state ----

    @property
    def state(self) -> CircuitState:
        self._check_state_transition()
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def rejected_calls(self) -> int:
        return self._rejected_calls

    @property
    def open_timeout(self) -> float:
        """Length of the current (or last) OPEN period in seconds."""
        return self._open_timeout

    def remaining_open_time(self) -> float:
        """Seconds until an OPEN breaker admits a probe (0 when not OPEN)."""
        self._check_state_transition()
        if self._state != CircuitState.OPEN:
            return 0.0
        return max(0.0, self._opened_at + self._open_timeout - self._clock())

    def _check_state_transition(self) -> None:
        if self._state == CircuitState.OPEN:
            if self._clock() - self._opened_at >= self._open_timeout:
                self._transition_to(CircuitState.HALF_OPEN)

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._half_open_calls = 0

        if new_state == CircuitState.CLOSED:
            self._failure_count = 0
            self._half_open_calls = 0
            self._open_count = 0

        logger.info(
            "Circuit breaker '%s': %s -> %s",
            self.name,
            old_state.value,
            new_state.value,
        )

    def _next_open_timeout(self) -> float:
        cfg = self._config
        timeout = cfg.base_timeout * (cfg.backoff_multiplier ** self._open_count)
        timeout = min(timeout, cfg.max_timeout)
        jitter = timeout * cfg.timeout_jitter
        return max(0.0, timeout + random.uniform(-jitter, jitter))

    def _trip(self) -> None:
        self._open_timeout = self._next_open_timeout()
        self._open_count += 1
        self._opened_at = self._clock()
        self._transition_to(CircuitState.OPEN)
        logger.warning(
            "Circuit breaker '%s' open for %.1fs after %d failures",
            self.name,
            self._open_timeout,
            self._failure_count,
        )

    # ---- call protocol ----

    def before_call(self) -> None:
        """Admit a call or raise :class:`CircuitOpenError`."""
        self._check_state_transition()

        if self._state == CircuitState.CLOSED:
            return

        if self._state == CircuitState.HALF_OPEN:
            if self._half_open_calls < self._config.half_open_max_calls:
                self._half_open_calls += 1
                return
            self._rejected_calls += 1
            raise CircuitOpenError(self.name, 0.0)

        self._rejected_calls += 1
        raise CircuitOpenError(self.name, self.remaining_open_time())

    def record_success(self) -> None:
        if self._state == CircuitState.CLOSED:
            self._failure_count = 0
        else:
            self._transition_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        self._failure_count += 1
        if self._state == CircuitState.HALF_OPEN:
            self._trip()
        elif self._state == CircuitState.CLOSED:
            if self._failure_count >= self._config.failure_threshold:
                self._trip()

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._transition_to(CircuitState.CLOSED)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self._failure_count,
            "rejected_calls": self._rejected_calls,
            "remaining": round(self.remaining_open_time(), 1),
        }


class CircuitBreakerRegistry:
    """Per-endpoint breakers, created lazily on first use."""

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, name: str) -> CircuitBreaker:
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name, self._config, self._clock)
            self._breakers[name] = breaker
        return breaker

    def remove(self, name: str) -> None:
        self._breakers.pop(name, None)

    def get_all(self) -> dict[str, CircuitBreaker]:
        return dict(self._breakers)

    def clear(self) -> None:
        self._breakers.clear()
