"""Retry strategies with exponential backoff for node invocations.

The engine drives each node's attempts through a :class:`RetryContext`; the
strategy decides whether another attempt is allowed and how long to wait.

Example:
    >>> strategy = ExponentialBackoff(max_attempts=4, initial_delay=1.0, max_delay=5.0)
    >>> [strategy.next_delay(i) for i in range(3)]
    [1.0, 2.0, 4.0]
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime

from spindle.core.errors import is_retryable
from spindle.core.timestamps import utc_now


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    max_attempts: int

    @abstractmethod
    def next_delay(self, retry_index: int) -> float:
        """Calculate delay before the next attempt.

        Args:
            retry_index: Zero-based retry number (0 = delay before the 2nd attempt)

        Returns:
            Delay in seconds
        """
        ...

    def should_retry(self, attempts: int, error: BaseException | None = None) -> bool:
        """True if another attempt is allowed after ``attempts`` failures."""
        if attempts >= self.max_attempts:
            return False
        if error is not None and not is_retryable(error):
            return False
        return True


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(initial_delay * (multiplier ** retry_index), max_delay) [+ jitter]

    Attributes:
        max_attempts: Total attempts including the first one
        initial_delay: Delay before the first retry, in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add randomness to prevent thundering herd (off by default so
            delays are exactly reproducible)
        jitter_range: Range of jitter as fraction of delay (0.0-1.0)
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    def next_delay(self, retry_index: int) -> float:
        delay = min(
            self.initial_delay * (self.multiplier ** retry_index),
            self.max_delay,
        )
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay = max(0.0, delay + random.uniform(-jitter_amount, jitter_amount))
        return delay


@dataclass
class NoRetry(RetryStrategy):
    """Single attempt - fail immediately."""

    max_attempts: int = 1

    def next_delay(self, retry_index: int) -> float:
        return 0.0

    def should_retry(self, attempts: int, error: BaseException | None = None) -> bool:
        return False


@dataclass
class RetryContext:
    """Tracks the attempts of one node dispatch.

    Example:
        >>> ctx = RetryContext(ExponentialBackoff(max_attempts=3))
        >>> ctx.begin_attempt()
        >>> ctx.record_failure(RuntimeError("boom"))
        >>> ctx.should_retry(), ctx.next_delay()
        (True, 1.0)
    """

    strategy: RetryStrategy
    attempts: int = field(default=0, init=False)
    last_error: BaseException | None = field(default=None, init=False)
    started_at: datetime = field(default_factory=utc_now, init=False)
    errors: list[tuple[int, BaseException, datetime]] = field(default_factory=list, init=False)
    delays: list[float] = field(default_factory=list, init=False)

    def begin_attempt(self) -> None:
        self.attempts += 1

    def record_failure(self, error: BaseException) -> None:
        """Record the failure of the current attempt."""
        self.errors.append((self.attempts, error, utc_now()))
        self.last_error = error

    def should_retry(self) -> bool:
        return self.strategy.should_retry(self.attempts, self.last_error)

    def next_delay(self) -> float:
        """Backoff before the next attempt; recorded in ``delays``."""
        delay = self.strategy.next_delay(self.attempts - 1)
        self.delays.append(delay)
        return delay

    @property
    def retry_count(self) -> int:
        return max(0, self.attempts - 1)

    @property
    def elapsed_seconds(self) -> float:
        return (utc_now() - self.started_at).total_seconds()
