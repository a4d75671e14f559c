"""
Unit tests for the sliding-window rate limiter.
"""

import asyncio

import pytest
from unittest.mock import MagicMock

from shared.errors import RateLimitExceededError
from shared.rate_limiter import RateLimiterConfig, SlidingWindowRateLimiter


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSlidingWindowRateLimiter:
    """Test cases for SlidingWindowRateLimiter."""

    @pytest.fixture
    def on_reject(self):
        return MagicMock()

    @pytest.fixture
    def limiter(self, on_reject):
        return SlidingWindowRateLimiter(
            RateLimiterConfig(max_requests=2, window_size=60.0, strategy="reject"),
            on_reject=on_reject
        )

    @pytest.mark.asyncio
    async def test_reject_third_concurrent_call(self, limiter, on_reject):
        release = asyncio.Event()
        entered = []

        async def hold(index):
            async with limiter.slot("evaluate"):
                entered.append(index)
                await release.wait()
                return index

        first = asyncio.create_task(hold(1))
        second = asyncio.create_task(hold(2))
        await asyncio.sleep(0)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await limiter.acquire("evaluate")

        release.set()
        assert await asyncio.gather(first, second) == [1, 2]
        assert exc_info.value.retryable is True
        on_reject.assert_called_once_with("evaluate")

    @pytest.mark.asyncio
    async def test_completion_frees_slot(self, limiter):
        async with limiter.slot("evaluate"):
            pass
        async with limiter.slot("evaluate"):
            pass
        async with limiter.slot("evaluate"):
            assert limiter.in_flight("evaluate") == 1

        assert limiter.in_flight("evaluate") == 0

    @pytest.mark.asyncio
    async def test_failure_frees_slot(self, limiter):
        with pytest.raises(RuntimeError):
            async with limiter.slot("evaluate"):
                raise RuntimeError("boom")

        assert limiter.in_flight("evaluate") == 0

    @pytest.mark.asyncio
    async def test_windows_are_per_operation(self, limiter):
        await limiter.acquire("a")
        await limiter.acquire("a")

        stamp = await limiter.acquire("b")

        assert stamp is not None
        assert limiter.get_state()["a"]["in_window"] == 2

    @pytest.mark.asyncio
    async def test_expired_entries_pruned(self):
        clock = FakeClock()
        limiter = SlidingWindowRateLimiter(
            RateLimiterConfig(max_requests=1, window_size=10.0, strategy="reject"),
            clock=clock
        )

        await limiter.acquire("op")
        clock.now = 10.0

        await limiter.acquire("op")
        assert limiter.in_flight("op") == 1

    @pytest.mark.asyncio
    async def test_queue_waits_for_free_slot(self):
        limiter = SlidingWindowRateLimiter(
            RateLimiterConfig(max_requests=1, window_size=60.0, strategy="queue", poll_interval=0.01)
        )
        stamp = await limiter.acquire("op")

        waiter = asyncio.create_task(limiter.acquire("op"))
        await asyncio.sleep(0.02)
        assert limiter.queued("op") == 1

        limiter.release("op", stamp)
        await asyncio.wait_for(waiter, timeout=1.0)
        assert limiter.queued("op") == 0

    @pytest.mark.asyncio
    async def test_queue_full_rejects(self):
        limiter = SlidingWindowRateLimiter(
            RateLimiterConfig(max_requests=1, window_size=60.0, strategy="queue",
                              max_queue_size=0, poll_interval=0.01)
        )
        await limiter.acquire("op")

        with pytest.raises(RateLimitExceededError):
            await limiter.acquire("op")

    @pytest.mark.asyncio
    async def test_delay_waits_for_oldest_to_age_out(self):
        limiter = SlidingWindowRateLimiter(
            RateLimiterConfig(max_requests=1, window_size=0.05, strategy="delay")
        )
        await limiter.acquire("op")

        await asyncio.wait_for(limiter.acquire("op"), timeout=1.0)

        assert limiter.in_flight("op") == 1

    def test_reset(self, limiter):
        limiter._windows["op"] = [1.0]

        limiter.reset("op")

        assert limiter.in_flight("op") == 0
