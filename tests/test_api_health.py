"""
Tests for leadrelay/api/health.py - liveness, readiness and deep checks.
"""
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest

from leadrelay.api.health import (
    VERSION,
    _check_redis,
    _check_workers,
    deep_health_check,
    health_check,
    readiness_check,
)
from leadrelay.workers.cache_warmer import HEARTBEAT_KEY as CACHE_WARMER_HEARTBEAT_KEY
from leadrelay.workers.queue_maintenance import HEARTBEAT_KEY as MAINTENANCE_HEARTBEAT_KEY


def _broken_db():
    db = AsyncMock()
    db.execute = AsyncMock(side_effect=Exception("connection refused"))
    return db


# ---------------------------------------------------------------------------
# GET /health
# ---------------------------------------------------------------------------


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_returns_healthy(self):
        result = await health_check()
        assert result["status"] == "healthy"
        assert result["version"] == VERSION
        assert datetime.fromisoformat(result["timestamp"]).tzinfo is not None


# ---------------------------------------------------------------------------
# GET /health/ready
# ---------------------------------------------------------------------------


class TestReadinessCheck:
    @pytest.mark.asyncio
    async def test_all_healthy_returns_ready(self, db, container):
        result = await readiness_check(db=db, container=container)
        assert result["status"] == "ready"
        assert result["checks"] == {"database": True, "redis": True}

    @pytest.mark.asyncio
    async def test_db_failure_returns_degraded(self, container):
        result = await readiness_check(db=_broken_db(), container=container)
        assert result["status"] == "degraded"
        assert result["checks"]["database"] is False

    @pytest.mark.asyncio
    async def test_redis_failure_reported(self):
        redis = AsyncMock()
        redis.ping = AsyncMock(side_effect=ConnectionError("refused"))
        result = await _check_redis(redis)
        assert result["healthy"] is False
        assert "refused" in result["error"]


# ---------------------------------------------------------------------------
# GET /health/deep
# ---------------------------------------------------------------------------


class TestDeepHealthCheck:
    @pytest.mark.asyncio
    async def test_missing_heartbeats_degrade(self, db, container):
        result = await deep_health_check(db=db, container=container)

        assert result["status"] == "degraded"
        assert result["checks"]["workers"]["healthy"] is False
        assert result["checks"]["queues"]["counts"]["direct-message"]["waiting"] == 0
        assert result["catalog_cache"]["size"] == 0

    @pytest.mark.asyncio
    async def test_fresh_heartbeats_healthy(self, db, container, redis):
        await redis.set(MAINTENANCE_HEARTBEAT_KEY, "2026-03-02T12:00:00+00:00")
        await redis.set(CACHE_WARMER_HEARTBEAT_KEY, "2026-03-02T12:00:00+00:00")
        result = await deep_health_check(db=db, container=container)
        assert result["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_database_down_is_unhealthy(self, container):
        result = await deep_health_check(db=_broken_db(), container=container)
        assert result["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_queue_depth_visible(self, db, container):
        await container.job_queue.submit("bulk-campaign", {"leads": []})
        result = await deep_health_check(db=db, container=container)
        assert result["checks"]["queues"]["counts"]["bulk-campaign"]["waiting"] == 1

    @pytest.mark.asyncio
    async def test_workers_disabled(self, container):
        container.settings = MagicMock(workers_enabled=False)
        result = await _check_workers(container)
        assert result == {"healthy": True, "note": "Workers disabled"}

    @pytest.mark.asyncio
    async def test_route_wired(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.headers["X-Correlation-ID"]
