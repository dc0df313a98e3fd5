"""Reusable retry-with-backoff policy for outbound calls."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

from releasewatch.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy wrapping any fallible coroutine.

    Delay before retry ``n`` (1-based) is
    ``min(base_delay * multiplier ** (n - 1), max_delay)`` plus up to
    ``jitter`` seconds of random noise.
    """

    max_attempts: int = 3
    base_delay: float = 0.5
    multiplier: float = 2.0
    max_delay: float = 8.0
    jitter: float = 0.0

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        """Build the policy configured for outbound email calls."""
        return cls(
            max_attempts=settings.retry_max_attempts,
            base_delay=settings.retry_base_delay,
            multiplier=settings.retry_multiplier,
            max_delay=settings.retry_max_delay,
            jitter=settings.retry_jitter,
        )

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after failed attempt number ``attempt``."""
        delay = min(self.base_delay * (self.multiplier ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, self.jitter)
        return delay

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
        **kwargs: Any,
    ) -> T:
        """
        Call ``fn`` until it succeeds or attempts run out.

        Args:
            fn: Coroutine function to call
            *args: Positional arguments for fn
            retry_on: Exception types that trigger a retry; anything else propagates
            **kwargs: Keyword arguments for fn

        Returns:
            Result of the first successful call

        Raises:
            The last exception raised by fn once attempts are exhausted
        """
        attempt = 1
        while True:
            try:
                return await fn(*args, **kwargs)
            except retry_on as e:
                if attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"Attempt {attempt}/{self.max_attempts} of {getattr(fn, '__name__', fn)} "
                    f"failed ({e}); retrying in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                attempt += 1
