"""Retry policy and circuit breaker for Graph calls.

Transient failures (timeouts, connection errors, 5xx) and throttling
(429/503) are retried with full-jitter exponential backoff. A Retry-After
hint from the server takes precedence over the computed delay, capped at
``max_delay``. A circuit breaker trips after consecutive throttling answers
and holds callers back until its cooldown elapses.
"""
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from ..errors import ThrottlingError, TransientNetworkError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Immutable retry settings."""
    max_attempts: int = 4
    base_delay: float = 0.5
    max_delay: float = 30.0


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (TransientNetworkError, ThrottlingError))


class _RetryAfterOrBackoff(wait_base):
    """Wait strategy that honours Retry-After before falling back to backoff."""

    def __init__(self, fallback_wait: wait_base, max_delay: float) -> None:
        self._fallback_wait = fallback_wait
        self._max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        retry_after = getattr(exc, "retry_after", None)
        if retry_after is not None:
            return min(float(retry_after), self._max_delay)
        return float(self._fallback_wait(retry_state))


def build_retrying(policy: RetryPolicy) -> AsyncRetrying:
    """Create a tenacity controller for one logical request."""
    return AsyncRetrying(
        stop=stop_after_attempt(policy.max_attempts),
        wait=_RetryAfterOrBackoff(
            wait_random_exponential(multiplier=policy.base_delay, max=policy.max_delay),
            policy.max_delay,
        ),
        retry=retry_if_exception(_is_retryable),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Consecutive-throttle circuit breaker.

    CLOSED -> OPEN after `threshold` throttles in a row; OPEN -> HALF_OPEN once
    `cooldown` seconds passed; one success closes it, one throttle reopens it.
    """

    def __init__(
        self,
        threshold: int = 5,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._threshold = threshold
        self._cooldown = cooldown
        self._clock = clock
        self._consecutive = 0
        self._opened_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if self._opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - self._opened_at >= self._cooldown:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def remaining_cooldown(self) -> float:
        """Seconds until an open circuit lets a trial request through."""
        if self.state != CircuitState.OPEN:
            return 0.0
        return max(self._cooldown - (self._clock() - self._opened_at), 0.0)

    def record_success(self) -> None:
        if self._opened_at is not None:
            logger.info("Circuit breaker closed")
        self._consecutive = 0
        self._opened_at = None

    def record_throttle(self) -> None:
        self._consecutive += 1
        if self.state == CircuitState.HALF_OPEN or self._consecutive >= self._threshold:
            if self.state != CircuitState.OPEN:
                logger.warning(
                    f"Circuit breaker opened after {self._consecutive} throttled response(s)"
                )
            self._opened_at = self._clock()
