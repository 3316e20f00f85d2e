"""
Cache warmer - preloads the product catalog listing into the response cache.
Runs every 15 minutes.

Each warmed entry sits under the same fingerprint and "products" tag the
listing endpoint uses, so the endpoint serves it as a HIT and catalog writes
invalidate it like any other entry.
"""
import asyncio
import logging
from datetime import datetime, timezone

from leadrelay.services.catalog_repository import (
    CATALOG_LIST_PATH,
    PRODUCTS_TAG,
    CatalogRepository,
    catalog_listing,
)
from leadrelay.services.response_cache import ResponseCache, fingerprint
from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 900
HEARTBEAT_TTL_SECONDS = 1800
HEARTBEAT_KEY = make_key("worker_health", "cache_warmer")
DEFAULT_OWNER_LIMIT = 20


async def _heartbeat(redis) -> None:
    """Store heartbeat timestamp in Redis."""
    if redis is None:
        return
    try:
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=HEARTBEAT_TTL_SECONDS)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def warm_catalog(
    catalog: CatalogRepository,
    cache: ResponseCache,
    owner_limit: int = DEFAULT_OWNER_LIMIT,
) -> int:
    """Warm the unfiltered listing for the most recently active owners. Returns entries warmed."""
    owners = await catalog.recent_owner_ids(owner_limit)
    warmed = 0
    for owner_id in owners:
        try:
            products = await catalog.find(owner_id)
            key = fingerprint(CATALOG_LIST_PATH, {}, owner_id)
            if await cache.warm(key, catalog_listing(products), tags=[PRODUCTS_TAG]):
                warmed += 1
        except Exception as e:
            logger.warning("Failed to warm catalog for %s: %s", owner_id, str(e))

    logger.info("Warmed %d of %d catalog listings", warmed, len(owners))
    return warmed


async def run_cache_warmer(
    catalog: CatalogRepository,
    cache: ResponseCache,
    redis=None,
    interval_seconds: float = POLL_INTERVAL_SECONDS,
    owner_limit: int = DEFAULT_OWNER_LIMIT,
) -> None:
    """Main warming loop. Runs until cancelled."""
    logger.info("Cache warmer started (interval=%ss, owners=%d)", interval_seconds, owner_limit)

    while True:
        try:
            await warm_catalog(catalog, cache, owner_limit)
        except Exception as e:
            logger.error("Cache warmer error: %s", str(e), exc_info=True)

        await _heartbeat(redis)
        await asyncio.sleep(interval_seconds)
