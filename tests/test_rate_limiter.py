"""
Tests for leadrelay/utils/rate_limiter.py - shared sliding window per channel.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from leadrelay.utils.rate_limiter import SlidingWindowRateLimiter


class TestSlidingWindow:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_rejects(self, redis, timer):
        limiter = SlidingWindowRateLimiter(redis, "direct-message", limit=3, window=1.0, clock=timer)

        results = [await limiter.acquire() for _ in range(3)]
        assert all(allowed for allowed, _ in results)

        allowed, retry_after = await limiter.acquire()
        assert allowed is False
        assert 0 < retry_after <= 1.0

    @pytest.mark.asyncio
    async def test_window_slides(self, redis, timer):
        limiter = SlidingWindowRateLimiter(redis, "direct-message", limit=2, window=1.0, clock=timer)
        await limiter.acquire()
        timer.advance(0.5)
        await limiter.acquire()
        assert (await limiter.acquire())[0] is False

        # First entry leaves the window
        timer.advance(0.6)
        assert (await limiter.acquire())[0] is True
        assert (await limiter.acquire())[0] is False

    @pytest.mark.asyncio
    async def test_rejected_attempts_do_not_consume_window(self, redis, timer):
        limiter = SlidingWindowRateLimiter(redis, "campaign", limit=1, window=1.0, clock=timer)
        await limiter.acquire()
        for _ in range(5):
            await limiter.acquire()
        assert await limiter.current_usage() == 1

    @pytest.mark.asyncio
    async def test_shared_across_instances(self, redis, timer):
        """Two worker processes of one channel share the same budget."""
        a = SlidingWindowRateLimiter(redis, "email", limit=2, window=1.0, clock=timer)
        b = SlidingWindowRateLimiter(redis, "email", limit=2, window=1.0, clock=timer)

        assert (await a.acquire())[0] is True
        assert (await b.acquire())[0] is True
        assert (await a.acquire())[0] is False
        assert (await b.acquire())[0] is False

    @pytest.mark.asyncio
    async def test_channels_independent(self, redis, timer):
        whatsapp = SlidingWindowRateLimiter(redis, "direct-message", limit=1, window=1.0, clock=timer)
        email = SlidingWindowRateLimiter(redis, "transactional-email", limit=1, window=1.0, clock=timer)
        assert (await whatsapp.acquire())[0] is True
        assert (await email.acquire())[0] is True

    @pytest.mark.asyncio
    async def test_reset(self, redis, timer):
        limiter = SlidingWindowRateLimiter(redis, "direct-message", limit=1, window=1.0, clock=timer)
        await limiter.acquire()
        await limiter.reset()
        assert (await limiter.acquire())[0] is True

    @pytest.mark.asyncio
    async def test_redis_failure_fails_open(self):
        broken = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=ConnectionError("redis down"))
        broken.pipeline.return_value = pipe

        limiter = SlidingWindowRateLimiter(broken, "direct-message", limit=1, window=1.0)
        assert await limiter.acquire() == (True, None)

    def test_rejects_bad_config(self, redis):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(redis, "x", limit=0, window=1.0)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(redis, "x", limit=1, window=0)
