"""Retry strategies with exponential backoff and jitter.

The executor never retries; retry is a property of the calling context.
Workflow steps build an :class:`ExponentialBackoff` from their step
definition and wait between attempts on the run's cancel event so a
cancellation interrupts the backoff.

Example:
    >>> strategy = ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=30.0, jitter=False)
    >>> [strategy.next_delay(a) for a in range(4)]
    [1.0, 2.0, 4.0, 8.0]
"""

from __future__ import annotations

import random
from abc import ABC, abstractmethod
from dataclasses import dataclass

from conductor.core.errors import is_retryable


class RetryStrategy(ABC):
    """Abstract base for retry strategies."""

    @abstractmethod
    def next_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number *attempt* (zero-based)."""
        ...

    @abstractmethod
    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether retry number *attempt* (zero-based) may run after *error*."""
        ...


@dataclass
class ExponentialBackoff(RetryStrategy):
    """Exponential backoff with optional jitter.

    Delay = min(base_delay * (multiplier ** attempt), max_delay) ± jitter

    Errors whose ``retryable`` flag is False (validation failures,
    acknowledged cancellations) are never retried.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True
    jitter_range: float = 0.25

    def next_delay(self, attempt: int) -> float:
        delay = min(self.base_delay * (self.multiplier**attempt), self.max_delay)
        if self.jitter:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)
        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        if attempt >= self.max_retries:
            return False
        if error is not None and not is_retryable(error):
            return False
        return True

