"""
In-process catalog cache in front of the Redis response cache.

Serves the unfiltered product listing per user for a few minutes. Purely a
latency tier: a restart empties it and reads fall through to Redis.
"""
import logging
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


class LocalCatalogCache:
    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Optional[Callable[[], float]] = None):
        self.ttl_seconds = ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: dict[str, tuple[Any, float]] = {}
        self._hits = 0
        self._misses = 0

    def get(self, user_id: str) -> Optional[Any]:
        entry = self._entries.get(str(user_id))
        if entry is None:
            self._misses += 1
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[str(user_id)]
            self._misses += 1
            return None
        self._hits += 1
        return value

    def set(self, user_id: str, value: Any) -> None:
        self._entries[str(user_id)] = (value, self._clock() + self.ttl_seconds)

    def invalidate(self, user_id: Optional[str] = None) -> None:
        """Drop one user's entry, or every entry when no user is given."""
        if user_id is None:
            self._entries.clear()
            logger.debug("Local catalog cache invalidated for all users")
        else:
            self._entries.pop(str(user_id), None)
            logger.debug("Local catalog cache invalidated for user %s", user_id)

    def clear(self) -> None:
        self._entries.clear()
        self._hits = 0
        self._misses = 0

    def cleanup(self) -> int:
        """Evict expired entries. Returns how many were removed."""
        now = self._clock()
        expired = [user_id for user_id, (_, expires_at) in self._entries.items() if now >= expires_at]
        for user_id in expired:
            del self._entries[user_id]
        if expired:
            logger.debug("Local catalog cache evicted %d expired entries", len(expired))
        return len(expired)

    def stats(self) -> dict:
        return {
            "size": len(self._entries),
            "ttl_seconds": self.ttl_seconds,
            "hits": self._hits,
            "misses": self._misses,
        }
