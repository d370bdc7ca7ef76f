"""Per-pool rate limiting.

A worker pool may cap how many jobs it starts per rolling window (for
example, 10 emails per second to stay under the provider's limit). The
limiter state belongs to one pool; pools never share an instance, so one
kind's traffic cannot throttle another's.

Example:
    >>> limiter = SlidingWindowLimiter(max_requests=10, window_seconds=1.0)
    >>> limiter.acquire()
    True
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field


@dataclass
class SlidingWindowLimiter:
    """Sliding window rate limiter.

    Counts executions in a sliding time window. More accurate than fixed
    windows and prevents boundary bursts.

    Attributes:
        max_requests: Maximum executions per window
        window_seconds: Window size in seconds
    """

    max_requests: int
    window_seconds: float
    clock: Callable[[], float] = time.monotonic

    _timestamps: deque[float] = field(default_factory=deque, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

    @classmethod
    def per_window_ms(cls, max_requests: int, window_ms: int) -> SlidingWindowLimiter:
        return cls(max_requests=max_requests, window_seconds=window_ms / 1000)

    def _cleanup(self, now: float) -> None:
        """Drop timestamps that left the window."""
        cutoff = now - self.window_seconds
        while self._timestamps and self._timestamps[0] <= cutoff:
            self._timestamps.popleft()

    def acquire(self, tokens: int = 1) -> bool:
        """Record ``tokens`` executions if the window has room. Never blocks."""
        now = self.clock()
        self._cleanup(now)
        if len(self._timestamps) + tokens > self.max_requests:
            return False
        self._timestamps.extend([now] * tokens)
        return True

    def get_wait_time(self, tokens: int = 1) -> float:
        """Seconds until the window has room for ``tokens``."""
        now = self.clock()
        self._cleanup(now)
        available = self.max_requests - len(self._timestamps)
        if available >= tokens:
            return 0.0
        need_to_expire = tokens - available
        if need_to_expire <= len(self._timestamps):
            oldest = self._timestamps[need_to_expire - 1]
            return max(0.0, oldest + self.window_seconds - now)
        return self.window_seconds

    async def wait(self, tokens: int = 1) -> None:
        """Suspend until ``tokens`` can be acquired, then acquire them."""
        while not self.acquire(tokens):
            await asyncio.sleep(self.get_wait_time(tokens))

    @property
    def current_count(self) -> int:
        """Executions recorded in the current window."""
        self._cleanup(self.clock())
        return len(self._timestamps)

    def reset(self) -> None:
        self._timestamps.clear()


__all__ = ["SlidingWindowLimiter"]
