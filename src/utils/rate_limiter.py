"""
Rate limiting utilities for bounding job throughput.
"""

import time
from typing import Callable, Dict, List


class SlidingWindowRateLimiter:
    """
    Sliding window rate limiter.

    Allows at most `limit` acquisitions per key within any `window` seconds.
    Workers use it to protect rate-limited downstream APIs (e.g. at most 10
    trending refreshes per minute).

    Algorithm:
        - Maintain dict of key -> list of acquisition timestamps
        - On try_acquire(): prune expired timestamps, check if under limit
        - If under limit: record timestamp, return True
        - If at/over limit: return False

    Args:
        limit: Max acquisitions per key per window
        window: Time window in seconds
        clock: Time source (seconds); injectable for tests

    Attributes:
        limit: Max acquisitions per key per window
        window: Time window in seconds
        _events: Dict mapping key to list of acquisition timestamps
    """

    def __init__(self, limit: int, window: float, clock: Callable[[], float] = time.monotonic):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.limit = limit
        self.window = window
        self._clock = clock
        self._events: Dict[str, List[float]] = {}

    def _prune(self, key: str, now: float) -> List[float]:
        cutoff = now - self.window
        events = [ts for ts in self._events.get(key, []) if ts > cutoff]
        self._events[key] = events
        return events

    def try_acquire(self, key: str = "default") -> bool:
        """
        Record one acquisition for `key` if the window has room.

        Returns:
            True if acquired, False if rate limited
        """
        now = self._clock()
        events = self._prune(key, now)
        if len(events) < self.limit:
            events.append(now)
            return True
        return False

    def remaining(self, key: str = "default") -> int:
        """Number of acquisitions still available in the current window."""
        return self.limit - len(self._prune(key, self._clock()))

    def seconds_until_available(self, key: str = "default") -> float:
        """Seconds until the next acquisition would succeed (0 if it would now)."""
        now = self._clock()
        events = self._prune(key, now)
        if len(events) < self.limit:
            return 0.0
        return max(0.0, events[0] + self.window - now)

    def reset(self, key: str = None):
        """
        Reset limiter state.

        Args:
            key: If provided, reset only this key. Otherwise reset all.
        """
        if key:
            self._events.pop(key, None)
        else:
            self._events.clear()
