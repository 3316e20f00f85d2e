"""
Tests for leadrelay/workers/queue_maintenance.py - stall sweep, retry promotion, pruning and heartbeat.
"""
import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from leadrelay.config import BULK_CAMPAIGN_QUEUE, DIRECT_MESSAGE_QUEUE
from leadrelay.models.delivery_job import JobState
from leadrelay.services.errors import TransientDeliveryError
from leadrelay.workers.queue_maintenance import (
    HEARTBEAT_KEY,
    run_maintenance_cycle,
    run_queue_maintenance,
)


class TestMaintenanceCycle:
    @pytest.mark.asyncio
    async def test_covers_every_queue(self, job_queue):
        summary = await run_maintenance_cycle(job_queue, 300)
        assert set(summary) == set(job_queue.queues)
        assert summary[DIRECT_MESSAGE_QUEUE] == {"recovered": 0, "dead": 0, "promoted": 0, "pruned": 0}

    @pytest.mark.asyncio
    async def test_recovers_stalled_jobs(self, job_queue, clock):
        job_id = await job_queue.submit(BULK_CAMPAIGN_QUEUE, {"leads": []})
        await job_queue.claim(BULK_CAMPAIGN_QUEUE, worker_id="crashed")

        clock.advance(301)
        summary = await run_maintenance_cycle(job_queue, 300)

        assert summary[BULK_CAMPAIGN_QUEUE]["recovered"] == 1
        status = await job_queue.get_status(BULK_CAMPAIGN_QUEUE, job_id)
        assert status.state == JobState.WAITING.value

    @pytest.mark.asyncio
    async def test_promotes_due_retries(self, job_queue, clock):
        job_id = await job_queue.submit(DIRECT_MESSAGE_QUEUE, {})
        job = await job_queue.claim(DIRECT_MESSAGE_QUEUE, worker_id="w")
        await job_queue.fail(job.id, TransientDeliveryError("503"), worker_id="w")

        clock.advance(5)
        summary = await run_maintenance_cycle(job_queue, 300)

        assert summary[DIRECT_MESSAGE_QUEUE]["promoted"] == 1
        status = await job_queue.get_status(DIRECT_MESSAGE_QUEUE, job_id)
        assert status.state == JobState.WAITING.value

    @pytest.mark.asyncio
    async def test_prunes_old_completed_jobs(self, job_queue, clock):
        job_id = await job_queue.submit(DIRECT_MESSAGE_QUEUE, {})
        job = await job_queue.claim(DIRECT_MESSAGE_QUEUE, worker_id="w")
        await job_queue.complete(job.id, {"status": "sent"}, worker_id="w")

        clock.advance(3601)
        summary = await run_maintenance_cycle(job_queue, 300)

        assert summary[DIRECT_MESSAGE_QUEUE]["pruned"] == 1
        assert await job_queue.get_status(DIRECT_MESSAGE_QUEUE, job_id) is None


class TestMaintenanceLoop:
    @pytest.mark.asyncio
    async def test_writes_heartbeat_and_survives_errors(self, job_queue, redis):
        with patch(
            "leadrelay.workers.queue_maintenance.run_maintenance_cycle",
            new_callable=AsyncMock,
            side_effect=RuntimeError("db blip"),
        ) as cycle:
            task = asyncio.create_task(
                run_queue_maintenance(job_queue, 300, redis=redis, interval_seconds=0.01)
            )
            for _ in range(100):
                if cycle.await_count >= 2:
                    break
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert cycle.await_count >= 2
        assert await redis.get(HEARTBEAT_KEY) is not None
