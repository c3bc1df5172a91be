"""
Gateway Retry and Task Deadlines

Rate-limit errors from the payment gateway are retried with exponential
backoff and jitter. Every other gateway error propagates immediately and is
left for the next scheduled run.
"""

import logging
import random
import time
from typing import Callable, Optional, TypeVar

from .config import RetryConfig
from .errors import RateLimitError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """Cooperative cancellation point for a task run."""

    def __init__(self, seconds: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @property
    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def remaining(self) -> Optional[float]:
        """Seconds left, or None for an unbounded run."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())


def backoff_delay(attempt: int, config: RetryConfig, rand: Callable[[], float] = random.random) -> float:
    """Delay before retry number `attempt` (1-based)."""
    delay = min(config.max_delay, config.base_delay * (config.backoff_multiplier ** (attempt - 1)))
    spread = delay * config.jitter
    return max(0.0, delay + (rand() * 2 - 1) * spread)


def call_with_backoff(
    fn: Callable[[], T],
    config: RetryConfig,
    deadline: Optional[Deadline] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call `fn`, retrying only on RateLimitError.

    Gives up after `config.max_attempts` attempts, or earlier when the next
    sleep would run past the deadline. The last RateLimitError is re-raised.
    """
    attempt = 1
    while True:
        try:
            return fn()
        except RateLimitError:
            if attempt >= config.max_attempts:
                raise
            delay = backoff_delay(attempt, config)
            if deadline is not None:
                remaining = deadline.remaining()
                if remaining is not None and delay >= remaining:
                    raise
            logger.warning(f"Gateway rate limited, retrying in {delay:.2f}s (attempt {attempt})")
            sleep(delay)
            attempt += 1
