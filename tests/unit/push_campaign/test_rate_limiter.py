"""
Unit Tests for the sliding window rate limiter
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from core.config import RateLimitConfig
from microservices.push_campaign_service.protocols import RateLimitExceededError
from microservices.push_campaign_service.rate_limiter import SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    config = RateLimitConfig(window_seconds=60.0, limits={"create": 2, "send": 1})
    return SlidingWindowRateLimiter(config, clock=clock)


class TestCheck:
    """Limits per actor and action"""

    def test_within_limit(self, limiter):
        limiter.check("usr_1", "create")
        limiter.check("usr_1", "create")

        assert limiter.remaining("usr_1", "create") == 0

    def test_over_limit(self, limiter, clock):
        # Given: Two creates ten seconds apart
        limiter.check("usr_1", "create")
        clock.advance(10)
        limiter.check("usr_1", "create")

        # When: A third arrives
        with pytest.raises(RateLimitExceededError) as exc_info:
            limiter.check("usr_1", "create")

        # Then: Retry once the oldest request leaves the window
        assert exc_info.value.retry_after == pytest.approx(50.0)

    def test_rejected_requests_are_not_recorded(self, limiter, clock):
        limiter.check("usr_1", "send")
        for _ in range(3):
            with pytest.raises(RateLimitExceededError):
                limiter.check("usr_1", "send")

        clock.advance(60)
        limiter.check("usr_1", "send")

    def test_window_slides(self, limiter, clock):
        limiter.check("usr_1", "create")
        clock.advance(30)
        limiter.check("usr_1", "create")
        clock.advance(31)

        limiter.check("usr_1", "create")
        assert limiter.remaining("usr_1", "create") == 0

    def test_actors_and_actions_are_separate(self, limiter):
        limiter.check("usr_1", "send")
        limiter.check("usr_2", "send")
        limiter.check("usr_1", "create")

        with pytest.raises(RateLimitExceededError):
            limiter.check("usr_1", "send")

    def test_unlimited_action(self, limiter):
        for _ in range(100):
            limiter.check("usr_1", "get")

        assert limiter.remaining("usr_1", "get") is None

    def test_disabled(self, clock):
        limiter = SlidingWindowRateLimiter(RateLimitConfig(enabled=False, limits={"send": 1}), clock=clock)

        for _ in range(5):
            limiter.check("usr_1", "send")


class TestSweep:
    """Idle windows are dropped"""

    def test_sweep(self, limiter, clock):
        limiter.check("usr_1", "create")
        limiter.check("usr_2", "create")
        clock.advance(45)
        limiter.check("usr_2", "create")
        clock.advance(20)

        assert limiter.sweep() == 1
        assert limiter.tracked_windows == 1

    @pytest.mark.asyncio
    async def test_start_and_close(self, limiter):
        limiter.check("usr_1", "create")
        await limiter.start()

        await limiter.close()

        assert limiter.tracked_windows == 0
        assert limiter._sweeper is None
