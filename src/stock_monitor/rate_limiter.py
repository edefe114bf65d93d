"""Sliding-window rate limiter for outbound checks."""

import time
from collections import deque
from collections.abc import Callable


def monotonic_ms() -> float:
    return time.monotonic() * 1000


class RateLimiter:
    """Allows at most ``max_requests`` within any rolling ``window_ms``."""

    def __init__(
        self,
        max_requests: int = 20,
        window_ms: float = 60_000,
        clock: Callable[[], float] = monotonic_ms,
    ):
        """Initialize limiter.

        Args:
            max_requests: Requests permitted per window
            window_ms: Window length in milliseconds
            clock: Millisecond clock, injectable for tests
        """
        if max_requests < 1:
            raise ValueError("max_requests must be positive")
        self.max_requests = max_requests
        self.window_ms = window_ms
        self.clock = clock
        self._timestamps: deque[float] = deque()

    def _evict(self, now: float) -> None:
        while self._timestamps and now - self._timestamps[0] >= self.window_ms:
            self._timestamps.popleft()

    def can_request(self) -> bool:
        self._evict(self.clock())
        return len(self._timestamps) < self.max_requests

    def record(self) -> None:
        self._timestamps.append(self.clock())

    def wait_time(self) -> float:
        """Milliseconds until a request is permitted again (0 if it already is)."""
        if self.can_request():
            return 0
        oldest = self._timestamps[0]
        return max(oldest + self.window_ms - self.clock(), 0)

    def configure(self, max_requests: int, window_ms: float) -> None:
        """Apply new limits without forgetting recorded requests."""
        self.max_requests = max_requests
        self.window_ms = window_ms
