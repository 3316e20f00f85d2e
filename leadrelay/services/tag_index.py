"""
Tag index - which response cache keys depend on which data groups.

Each tag is a Redis sorted set of cache keys scored by the entry's expiry
(epoch seconds). Members whose score has passed are dropped on every read and
every add, so a tag never hands out a key whose entry already expired.
Tag sets carry no TTL of their own; an emptied sorted set disappears.
"""
import logging
import time
from typing import Callable, Iterable, Optional

from redis.exceptions import WatchError

from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

# Invalidation retries when a concurrent write touches a watched tag
WATCH_RETRIES = 5


def normalize_tags(tags) -> list[str]:
    """Accept a single tag or an iterable of tags; drop blanks and duplicates."""
    if tags is None:
        return []
    if isinstance(tags, str):
        tags = [tags]
    seen = []
    for tag in tags:
        tag = str(tag).strip()
        if tag and tag not in seen:
            seen.append(tag)
    return seen


class TagIndex:
    def __init__(self, redis, clock: Optional[Callable[[], float]] = None):
        self.redis = redis
        self._clock = clock or time.time

    @staticmethod
    def tag_key(tag: str) -> str:
        return make_key("cache", "tag", tag)

    def stage_add(self, pipe, key: str, tags: Iterable[str], expires_at: float) -> None:
        """Queue tag membership writes on an existing pipeline (same MULTI as the entry)."""
        now = self._clock()
        for tag in normalize_tags(tags):
            tag_key = self.tag_key(tag)
            pipe.zremrangebyscore(tag_key, "-inf", now)
            pipe.zadd(tag_key, {key: expires_at})

    async def add(self, key: str, tags: Iterable[str], expires_at: float) -> None:
        pipe = self.redis.pipeline(transaction=True)
        self.stage_add(pipe, key, tags, expires_at)
        await pipe.execute()

    async def keys_for(self, tag: str) -> list[str]:
        """Live cache keys under `tag`."""
        tag_key = self.tag_key(tag)
        now = self._clock()
        pipe = self.redis.pipeline(transaction=True)
        pipe.zremrangebyscore(tag_key, "-inf", now)
        pipe.zrange(tag_key, 0, -1)
        _, members = await pipe.execute()
        return list(members)

    async def untag(self, key: str, tags: Iterable[str]) -> None:
        pipe = self.redis.pipeline(transaction=True)
        for tag in normalize_tags(tags):
            pipe.zrem(self.tag_key(tag), key)
        await pipe.execute()

    async def invalidate(self, tags) -> int:
        """
        Delete every entry under `tags` and the tag records themselves.

        Tag sets are WATCHed while their members are read, and the deletes
        run in one MULTI, so an entry written under one of these tags
        mid-invalidation forces a retry instead of surviving untracked.

        Returns the number of cache entries actually removed.
        """
        tag_list = normalize_tags(tags)
        if not tag_list:
            return 0
        tag_keys = [self.tag_key(tag) for tag in tag_list]

        async with self.redis.pipeline(transaction=True) as pipe:
            for _ in range(WATCH_RETRIES):
                try:
                    await pipe.watch(*tag_keys)
                    now = self._clock()
                    keys: set[str] = set()
                    for tag_key in tag_keys:
                        keys.update(await pipe.zrangebyscore(tag_key, now, "+inf"))

                    pipe.multi()
                    if keys:
                        pipe.delete(*keys)
                    pipe.delete(*tag_keys)
                    results = await pipe.execute()
                    removed = int(results[0]) if keys else 0

                    logger.info(
                        "Invalidated %d cache entries for tags %s", removed, ",".join(tag_list),
                        extra={"tag": ",".join(tag_list)},
                    )
                    return removed
                except WatchError:
                    logger.debug("Tag set changed during invalidation of %s, retrying", tag_list)
                    await pipe.reset()

        logger.warning(
            "Invalidation of %s lost %d races; entries expire by TTL", tag_list, WATCH_RETRIES,
            extra={"tag": ",".join(tag_list)},
        )
        return 0
