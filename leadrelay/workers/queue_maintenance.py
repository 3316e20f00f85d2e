"""
Queue maintenance worker - stall recovery, retry promotion and retention pruning.
Runs every 60 seconds across every configured queue.

A job whose worker died mid-send stays active forever unless something
notices; this worker is that something.
"""
import asyncio
import logging
from datetime import datetime, timezone

from leadrelay.services.job_queue import JobQueue
from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60
HEARTBEAT_TTL_SECONDS = 300
HEARTBEAT_KEY = make_key("worker_health", "queue_maintenance")


async def _heartbeat(redis) -> None:
    """Store heartbeat timestamp in Redis."""
    if redis is None:
        return
    try:
        await redis.set(HEARTBEAT_KEY, datetime.now(timezone.utc).isoformat(), ex=HEARTBEAT_TTL_SECONDS)
    except Exception as e:
        logger.debug("Heartbeat write failed: %s", str(e))


async def run_maintenance_cycle(queue: JobQueue, stall_timeout_seconds: float) -> dict:
    """Recover stalled jobs, promote due retries and prune finished ones. Returns per-queue totals."""
    summary = {}
    for queue_name in queue.queues:
        stalls = await queue.recover_stalled(queue_name, stall_timeout_seconds)
        promoted = await queue.promote_due_retries(queue_name)
        pruned = await queue.prune(queue_name)
        summary[queue_name] = {**stalls, "promoted": promoted, "pruned": pruned}

        if stalls["recovered"] or stalls["dead"]:
            logger.warning(
                "Stall recovery on %s: %d returned to waiting, %d dead-lettered",
                queue_name, stalls["recovered"], stalls["dead"],
                extra={"queue": queue_name},
            )
    return summary


async def run_queue_maintenance(
    queue: JobQueue,
    stall_timeout_seconds: float,
    redis=None,
    interval_seconds: float = POLL_INTERVAL_SECONDS,
) -> None:
    """Main maintenance loop. Runs until cancelled."""
    logger.info(
        "Queue maintenance started (interval=%ss, stall timeout=%ss)",
        interval_seconds, stall_timeout_seconds,
    )

    while True:
        try:
            await run_maintenance_cycle(queue, stall_timeout_seconds)
        except Exception as e:
            logger.error("Queue maintenance error: %s", str(e), exc_info=True)

        await _heartbeat(redis)
        await asyncio.sleep(interval_seconds)
