"""Token bucket rate limiter shared by the dispatch workers."""

import asyncio
import logging
import time
from typing import Optional

from releasewatch.config import settings

logger = logging.getLogger(__name__)


class RateLimiter:
    """Token bucket limiter for a single outbound channel."""

    def __init__(
        self,
        requests_per_second: Optional[float] = None,
        burst_size: Optional[int] = None,
    ):
        """
        Initialize limiter.

        Args:
            requests_per_second: Tokens added per second (defaults to config)
            burst_size: Maximum tokens held (defaults to requests_per_second)
        """
        if requests_per_second is None:
            requests_per_second = settings.transport_requests_per_second
        if requests_per_second <= 0:
            raise ValueError("requests_per_second must be positive")
        if burst_size is None:
            burst_size = max(int(requests_per_second), 1)

        self.requests_per_second = requests_per_second
        self.burst_size = burst_size
        self._tokens = float(burst_size)
        self._last_refill = time.monotonic()
        self._lock = asyncio.Lock()

    async def acquire(self) -> float:
        """
        Wait until a token is available and consume it.

        Returns:
            Seconds spent waiting
        """
        async with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_refill
            self._tokens = min(self._tokens + elapsed * self.requests_per_second, self.burst_size)
            self._last_refill = now

            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return 0.0

            # Hold the lock while sleeping so waiters are served in order
            wait_time = (1.0 - self._tokens) / self.requests_per_second
            await asyncio.sleep(wait_time)
            self._tokens = 0.0
            self._last_refill = time.monotonic()
            return wait_time
