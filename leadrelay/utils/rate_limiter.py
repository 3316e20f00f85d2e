"""
Redis-based rate limiter for outbound provider calls.
Uses sliding window counter pattern for accurate rate limiting.

The window lives in Redis, so every worker process of a channel shares it and
scaling workers horizontally cannot exceed the provider's documented limit.
"""
import logging
import time
import uuid
from typing import Callable, Optional

from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """At most `limit` acquisitions per rolling `window` seconds for one channel."""

    def __init__(
        self,
        redis,
        channel: str,
        limit: int,
        window: float,
        clock: Optional[Callable[[], float]] = None,
    ):
        if limit < 1:
            raise ValueError("limit must be at least 1")
        if window <= 0:
            raise ValueError("window must be positive")
        self.redis = redis
        self.channel = channel
        self.limit = limit
        self.window = window
        self.key = make_key("ratelimit", channel)
        self._clock = clock or time.time

    async def acquire(self) -> tuple[bool, Optional[float]]:
        """
        Try to take one slot in the current window.

        Returns: (allowed: bool, retry_after_seconds: float | None)
        """
        slot, retry_after = await self.reserve()
        return slot is not None, retry_after

    async def reserve(self) -> tuple[Optional[str], Optional[float]]:
        """
        Take one slot and return its id, which release() hands back unused.

        Returns: (slot_id | None, retry_after_seconds | None)
        """
        now = self._clock()
        window_start = now - self.window
        member = f"{now}:{uuid.uuid4().hex[:8]}"

        try:
            pipe = self.redis.pipeline(transaction=True)
            # Remove expired entries
            pipe.zremrangebyscore(self.key, 0, window_start)
            # Add current attempt
            pipe.zadd(self.key, {member: now})
            # Count attempts in window
            pipe.zcard(self.key)
            # Set expiry on the key
            pipe.expire(self.key, int(self.window) + 1)
            results = await pipe.execute()
            count = results[2]

            if count > self.limit:
                # Rejected attempts must not eat into the window
                await self.redis.zrem(self.key, member)
                retry_after = await self._retry_after(now)
                logger.warning(
                    "Rate limit exceeded: channel=%s count=%d limit=%d",
                    self.channel, count, self.limit,
                    extra={"queue": self.channel},
                )
                return None, retry_after

            return member, None
        except Exception as e:
            # Redis failure should not halt delivery - allow through
            logger.warning(
                "Rate limiter Redis error for %s: %s. Allowing attempt.",
                self.channel, str(e),
            )
            return member, None

    async def release(self, slot: str) -> None:
        """Give back a reserved slot that was not used for a send."""
        try:
            await self.redis.zrem(self.key, slot)
        except Exception as e:
            logger.debug("Rate limiter release failed for %s: %s", self.channel, str(e))

    async def _retry_after(self, now: float) -> float:
        """Seconds until the oldest entry leaves the window."""
        try:
            oldest = await self.redis.zrange(self.key, 0, 0, withscores=True)
            if oldest:
                return max(oldest[0][1] + self.window - now, 0.001)
        except Exception as e:
            logger.debug("Rate limiter retry_after lookup failed: %s", str(e))
        return self.window

    async def current_usage(self) -> int:
        """Attempts counted in the current window (diagnostics only)."""
        now = self._clock()
        try:
            return await self.redis.zcount(self.key, now - self.window, "+inf")
        except Exception as e:
            logger.debug("Rate limiter usage lookup failed: %s", str(e))
            return 0

    async def reset(self) -> None:
        await self.redis.delete(self.key)
