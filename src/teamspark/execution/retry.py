"""Backoff strategies deciding when a failed job is attempted again.

Example:
    >>> from teamspark.execution.retry import ExponentialBackoff
    >>>
    >>> strategy = ExponentialBackoff(max_attempts=3, base_delay_ms=2000)
    >>> [strategy.next_delay_ms(n) for n in (1, 2)]
    [2000, 4000]
    >>> strategy.should_retry(3)
    False
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass

from teamspark.execution.models import BackoffPolicy


class RetryStrategy(ABC):
    """Abstract base for retry strategies.

    ``attempts_made`` counts deliveries that already ended in failure,
    so it is 1 after the first failed attempt.
    """

    max_attempts: int

    @abstractmethod
    def next_delay_ms(self, attempts_made: int) -> int:
        """Milliseconds to wait before the next delivery."""

    def should_retry(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts


@dataclass(frozen=True)
class ExponentialBackoff(RetryStrategy):
    """``base_delay_ms * 2 ** (attempts_made - 1)``, optionally capped."""

    max_attempts: int = 3
    base_delay_ms: int = 2000
    max_delay_ms: int | None = None

    def next_delay_ms(self, attempts_made: int) -> int:
        delay = self.base_delay_ms * (2 ** max(attempts_made - 1, 0))
        if self.max_delay_ms is not None:
            delay = min(delay, self.max_delay_ms)
        return delay


@dataclass(frozen=True)
class FixedBackoff(RetryStrategy):
    """Same delay before every retry."""

    max_attempts: int = 3
    delay_ms: int = 2000

    def next_delay_ms(self, attempts_made: int) -> int:
        return self.delay_ms


def strategy_for(policy: BackoffPolicy, max_attempts: int) -> RetryStrategy:
    """Build the strategy a job's stored backoff policy describes."""
    if policy.type == "fixed":
        return FixedBackoff(max_attempts=max_attempts, delay_ms=policy.delay_ms)
    return ExponentialBackoff(max_attempts=max_attempts, base_delay_ms=policy.delay_ms)


__all__ = ["RetryStrategy", "ExponentialBackoff", "FixedBackoff", "strategy_for"]
