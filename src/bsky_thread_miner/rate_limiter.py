"""
Client-side request throttling for the Bluesky public API.

The public AppView allows 3000 requests per 5 minutes per IP. The shared
limiter below stays under a conservative 2500 and keeps at least 50 ms
between requests, so a large crawl slows down instead of collecting 429s.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Optional

logger = logging.getLogger(__name__)

# Conservative quota for the shared limiter (actual server limit is 3000)
DEFAULT_MAX_REQUESTS = 2500
DEFAULT_WINDOW = 5 * 60.0
DEFAULT_MIN_DELAY = 0.05


@dataclass(frozen=True)
class RateLimiterStats:
    """Snapshot of limiter usage: requests in window, slots left, seconds to reset."""
    used: int
    remaining: int
    window_reset: float


class RateLimiter:
    """
    Sliding-window request limiter with a minimum spacing between requests.

    The window keeps the timestamp of every request made in the last
    ``window`` seconds. When the window is full, ``wait_for_slot`` sleeps
    until the oldest request falls out of it.

    Usage:
        limiter = RateLimiter(max_requests=100, window=60.0, min_delay=0.1)
        await limiter.wait_for_slot()
        response = await http.get(url)
    """

    def __init__(
        self,
        max_requests: int,
        window: float,
        min_delay: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            max_requests: Requests allowed per window
            window: Window length in seconds
            min_delay: Minimum seconds between consecutive requests
            clock: Monotonic time source (injectable for tests)

        Raises:
            ValueError: if ``max_requests`` is below 1
        """
        if max_requests < 1:
            raise ValueError(f"max_requests must be at least 1, got {max_requests}")
        self.max_requests = max_requests
        self.window = window
        self.min_delay = min_delay
        self._clock = clock
        self._requests: Deque[float] = deque()
        self._last_request: Optional[float] = None

    async def wait_for_slot(self):
        """Sleep until the spacing and the window allow a request, then claim it.

        The slot is recorded before returning so concurrent callers queue
        behind it.
        """
        while True:
            self._expire()
            now = self._clock()
            wait = 0.0

            if self.min_delay > 0 and self._last_request is not None:
                wait = max(wait, self.min_delay - (now - self._last_request))

            if len(self._requests) >= self.max_requests:
                wait = max(wait, self.window - (now - self._requests[0]))

            if wait <= 0:
                self.record_request()
                return

            if len(self._requests) >= self.max_requests:
                logger.info("Request window full (%d/%d), waiting %.2fs",
                            len(self._requests), self.max_requests, wait)
            await asyncio.sleep(wait)

    def record_request(self):
        """Record that a request was just made."""
        now = self._clock()
        self._requests.append(now)
        self._last_request = now

    def get_stats(self) -> RateLimiterStats:
        self._expire()
        used = len(self._requests)
        window_reset = 0.0
        if self._requests:
            window_reset = max(0.0, self.window - (self._clock() - self._requests[0]))
        return RateLimiterStats(
            used=used,
            remaining=max(0, self.max_requests - used),
            window_reset=window_reset,
        )

    def is_near_limit(self, threshold: float) -> bool:
        """True when the used fraction of the window is at or above ``threshold``."""
        self._expire()
        return len(self._requests) / self.max_requests >= threshold

    def reset(self):
        self._requests.clear()
        self._last_request = None

    def _expire(self):
        cutoff = self._clock() - self.window
        while self._requests and self._requests[0] <= cutoff:
            self._requests.popleft()


_global_limiter: Optional[RateLimiter] = None


def get_rate_limiter() -> RateLimiter:
    """Return the process-wide limiter, creating it on first use."""
    global _global_limiter
    if _global_limiter is None:
        _global_limiter = RateLimiter(
            max_requests=DEFAULT_MAX_REQUESTS,
            window=DEFAULT_WINDOW,
            min_delay=DEFAULT_MIN_DELAY,
        )
    return _global_limiter


def reset_rate_limiter():
    """Discard the process-wide limiter (next call to get_rate_limiter makes a new one)."""
    global _global_limiter
    _global_limiter = None
