"""
Rate limiting for merchant-facing endpoints.

Per (actor, action) sliding window of request timestamps held in process
memory. Limits are advisory: they protect the service from bursts, not
from a determined client spread over several instances.
"""

import asyncio
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from core.config import RateLimitConfig

from .protocols import RateLimitExceededError

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """Sliding window limiter keyed by actor and action"""

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._requests: Dict[Tuple[str, str], Deque[float]] = {}
        self._sweeper: Optional[asyncio.Task] = None

    def limit_for(self, action: str) -> Optional[int]:
        return self.config.limits.get(action)

    def _clean_old_requests(self, key: Tuple[str, str], now: float) -> Deque[float]:
        """Remove requests outside the time window"""
        window = self._requests.get(key)
        if window is None:
            window = deque()
            self._requests[key] = window
        cutoff = now - self.config.window_seconds
        while window and window[0] <= cutoff:
            window.popleft()
        return window

    def check(self, actor: str, action: str) -> None:
        """
        Record one request, or raise when the actor is over its limit.

        Actions without a configured limit are never limited.

        Raises:
            RateLimitExceededError: with retry_after seconds until a slot frees
        """
        if not self.config.enabled:
            return
        limit = self.limit_for(action)
        if limit is None:
            return

        now = self._clock()
        window = self._clean_old_requests((actor, action), now)

        if len(window) >= limit:
            retry_after = max(0.0, window[0] + self.config.window_seconds - now)
            logger.warning(f"Rate limit exceeded: actor={actor} action={action} limit={limit}")
            raise RateLimitExceededError(
                f"Rate limit exceeded for '{action}': {limit} requests per {int(self.config.window_seconds)}s",
                retry_after=retry_after,
            )

        window.append(now)

    def remaining(self, actor: str, action: str) -> Optional[int]:
        limit = self.limit_for(action)
        if limit is None:
            return None
        window = self._clean_old_requests((actor, action), self._clock())
        return max(0, limit - len(window))

    def sweep(self) -> int:
        """Drop expired timestamps and empty windows; returns windows removed"""
        now = self._clock()
        removed = 0
        for key in list(self._requests):
            if not self._clean_old_requests(key, now):
                del self._requests[key]
                removed += 1
        return removed

    @property
    def tracked_windows(self) -> int:
        return len(self._requests)

    # ====================
    # Lifecycle
    # ====================

    async def start(self) -> None:
        """Start the background sweep task"""
        if self._sweeper is None and self.config.enabled:
            self._sweeper = asyncio.create_task(self._sweep_loop())
            logger.info("Rate limiter sweep task started")

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.sweep_interval_seconds)
            removed = self.sweep()
            if removed:
                logger.debug(f"Rate limiter swept {removed} idle windows")

    async def close(self) -> None:
        """Stop the sweep task and forget all windows"""
        if self._sweeper is not None:
            self._sweeper.cancel()
            try:
                await self._sweeper
            except asyncio.CancelledError:
                pass
            self._sweeper = None
        self._requests.clear()
        logger.info("Rate limiter closed")


__all__ = ["SlidingWindowRateLimiter"]
