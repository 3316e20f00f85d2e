"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis)
- GET /health/deep  - deep check (DB + Redis + queue depth + worker heartbeats)
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from leadrelay.api.deps import get_container
from leadrelay.database import get_db
from leadrelay.services.container import ServiceContainer
from leadrelay.utils.redis import make_key
from leadrelay.workers.cache_warmer import HEARTBEAT_KEY as CACHE_WARMER_HEARTBEAT_KEY
from leadrelay.workers.queue_maintenance import HEARTBEAT_KEY as MAINTENANCE_HEARTBEAT_KEY

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """Readiness check - verifies database and Redis connectivity."""
    checks = {
        "database": (await _check_database(db))["healthy"],
        "redis": (await _check_redis(container.redis))["healthy"],
    }
    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/health/deep")
async def deep_health_check(
    db: AsyncSession = Depends(get_db),
    container: ServiceContainer = Depends(get_container),
):
    """
    Deep health check - checks ALL dependencies.

    Checks:
    - Database: SELECT 1
    - Redis: PING
    - Queues: counts by state (dead-letter growth is visible here)
    - Workers: heartbeat freshness
    """
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(container.redis),
        "queues": await _check_queues(container),
        "workers": await _check_workers(container),
    }

    critical = ["database", "redis"]
    critical_healthy = all(checks[k].get("healthy", False) for k in critical)
    all_healthy = all(c.get("healthy", False) for c in checks.values())

    if all_healthy:
        status = "healthy"
    elif critical_healthy:
        status = "degraded"
    else:
        status = "unhealthy"

    return {
        "status": status,
        "checks": checks,
        "catalog_cache": container.catalog_cache.stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


async def _check_database(db: AsyncSession) -> dict:
    try:
        result = await db.execute(text("SELECT 1"))
        result.scalar()
        return {"healthy": True}
    except Exception as e:
        logger.error("Health: database check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis(redis) -> dict:
    try:
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Health: Redis check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_queues(container: ServiceContainer) -> dict:
    try:
        return {"healthy": True, "counts": await container.job_queue.queue_counts()}
    except Exception as e:
        logger.warning("Health: queue count failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_workers(container: ServiceContainer) -> dict:
    """Check worker heartbeat timestamps in Redis."""
    if not container.settings.workers_enabled:
        return {"healthy": True, "note": "Workers disabled"}
    try:
        keys = {pool.name: make_key("worker_health", pool.name) for pool in container.pools.values()}
        keys["queue_maintenance"] = MAINTENANCE_HEARTBEAT_KEY
        keys["cache_warmer"] = CACHE_WARMER_HEARTBEAT_KEY

        workers = {}
        for name, key in keys.items():
            heartbeat = await container.redis.get(key)
            workers[name] = {"healthy": heartbeat is not None, "last_heartbeat": heartbeat}

        return {"healthy": all(w["healthy"] for w in workers.values()), "workers": workers}
    except Exception as e:
        logger.debug("Health: worker heartbeat check failed: %s", str(e))
        return {"healthy": True, "note": "Unable to check worker heartbeats"}
