"""Retry policy for step invocations.

Delay before retry ``n`` (0-based) is ``base_delay * multiplier ** n``,
capped at ``max_delay``. A step with ``max_retries=3`` is invoked at most
four times.

Example:
    >>> policy = ExponentialBackoff(max_retries=3, base_delay=1.0, max_delay=30.0)
    >>> [policy.next_delay(n) for n in range(3)]
    [1.0, 2.0, 4.0]
    >>> policy.should_retry(3)
    False
"""

from __future__ import annotations

import random
from dataclasses import dataclass

from isx_spine.core.errors import is_retryable
from isx_spine.operations.models import OperationConfig


@dataclass
class ExponentialBackoff:
    """Exponential backoff with optional jitter.

    Attributes:
        max_retries: Maximum number of retries after the first attempt
        base_delay: Initial delay in seconds
        max_delay: Maximum delay cap in seconds
        multiplier: Exponential multiplier
        jitter: Add ±``jitter_range`` randomness to each delay
        jitter_range: Fraction of the delay used for jitter (0.0-1.0)
    """

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.25

    @classmethod
    def from_config(cls, config: OperationConfig, *, max_retries: int | None = None, jitter: bool = False) -> ExponentialBackoff:
        return cls(
            max_retries=config.max_retries if max_retries is None else max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            multiplier=config.retry_multiplier,
            jitter=jitter,
        )

    def next_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0 = first retry)."""
        delay = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, min(delay, self.max_delay))

        return delay

    def should_retry(self, attempt: int, error: BaseException | None = None) -> bool:
        """Whether retry number ``attempt`` (0-based) may run after ``error``."""
        if attempt >= self.max_retries:
            return False
        if error is not None and not is_retryable(error):
            return False
        return True


__all__ = ["ExponentialBackoff"]
