"""
Delivery worker pool - one per queue.

Claims jobs up to the queue's concurrency limit and runs each one as its own
asyncio task: sender, then complete() or fail(). A rate-limit slot is
reserved before each claim; while the channel is throttled jobs stay waiting.

Uses BRPOP on the queue's Redis notification key for near-instant wake on new
jobs, with a timeout falling back to a DB poll as safety net.
"""
import asyncio
import logging
import math
import socket
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from leadrelay.config import QueueConfig
from leadrelay.models.delivery_job import DeliveryJob, JobState
from leadrelay.services.errors import JobNotFoundError
from leadrelay.services.job_queue import JobQueue, queue_notify_key
from leadrelay.services.senders import SendContext, Sender
from leadrelay.utils.rate_limiter import SlidingWindowRateLimiter
from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 30
HEARTBEAT_TTL_SECONDS = 120
SHUTDOWN_GRACE_SECONDS = 10


def default_worker_id(queue_name: str) -> str:
    return f"{socket.gethostname()}:{queue_name}:{uuid.uuid4().hex[:6]}"


class DeliveryWorkerPool:
    """Runs delivery jobs for a single queue with bounded concurrency."""

    def __init__(
        self,
        queue: JobQueue,
        config: QueueConfig,
        sender: Sender,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        redis=None,
        worker_id: Optional[str] = None,
        poll_interval_seconds: float = POLL_INTERVAL_SECONDS,
    ):
        self.queue = queue
        self.config = config
        self.sender = sender
        self.rate_limiter = rate_limiter
        self.redis = redis
        self.worker_id = worker_id or default_worker_id(config.name)
        self.poll_interval_seconds = poll_interval_seconds
        self.name = f"delivery_{config.name.replace('-', '_')}"
        self._in_flight: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()
        self._throttled_until: Optional[datetime] = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def process_cycle(self) -> int:
        """
        Claim as many due jobs as there are free slots. Returns the number started.

        A rate-limit slot is reserved before each claim, so a throttled queue
        leaves its jobs waiting instead of claiming them and spending attempts.
        """
        started = 0
        while not self._stopping.is_set() and self.in_flight < self.config.concurrency:
            slot = None
            if self.rate_limiter is not None:
                slot, retry_after = await self.rate_limiter.reserve()
                if slot is None:
                    delay = retry_after if retry_after is not None else self.config.rate_window_seconds
                    self._throttled_until = self.queue.now() + timedelta(seconds=delay)
                    break

            job = None
            try:
                job = await self.queue.claim(
                    self.config.name,
                    concurrency_limit=self.config.concurrency,
                    worker_id=self.worker_id,
                )
            finally:
                if job is None and slot is not None:
                    await self.rate_limiter.release(slot)
            if job is None:
                break
            task = asyncio.create_task(self.run_job(job), name=f"{self.name}:{str(job.id)[:8]}")
            self._in_flight.add(task)
            task.add_done_callback(self._in_flight.discard)
            started += 1
        return started

    async def run_job(self, job: DeliveryJob) -> str:
        """Execute one claimed job. Returns the state it ended in."""
        job_id = str(job.id)

        async def report_progress(progress: dict) -> None:
            await self.queue.update_progress(job_id, progress, worker_id=self.worker_id)

        context = SendContext(job_id=job_id, attempt=job.attempts, report_progress=report_progress)

        try:
            result = await self.sender.send(dict(job.payload or {}), context)
        except asyncio.CancelledError:
            # Stays active; stall recovery returns it to waiting
            logger.warning(
                "Job %s cancelled mid-send on shutdown", job_id[:8],
                extra={"queue": self.config.name, "job_id": job_id},
            )
            raise
        except Exception as e:
            return await self._record_failure(job_id, e)

        try:
            await self.queue.complete(job_id, result=result, worker_id=self.worker_id)
        except JobNotFoundError:
            logger.warning("Job %s pruned before completion was recorded", job_id[:8])
        return JobState.COMPLETED.value

    async def _record_failure(self, job_id: str, error: Exception) -> str:
        try:
            return await self.queue.fail(job_id, error, worker_id=self.worker_id)
        except JobNotFoundError:
            logger.warning("Job %s pruned before failure was recorded", job_id[:8])
            return JobState.DEAD.value

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for every in-flight job to finish."""
        if self._in_flight:
            await asyncio.wait(set(self._in_flight), timeout=timeout)

    async def _heartbeat(self) -> None:
        """Store heartbeat timestamp in Redis."""
        if self.redis is None:
            return
        try:
            await self.redis.set(
                make_key("worker_health", self.name),
                datetime.now(timezone.utc).isoformat(),
                ex=HEARTBEAT_TTL_SECONDS,
            )
        except Exception as e:
            logger.debug("Heartbeat write failed: %s", str(e))

    async def _wait_timeout(self) -> float:
        """Poll interval, shortened to the end of a rate-limit throttle or the next delayed job."""
        timeout = float(self.poll_interval_seconds)
        if self._throttled_until is not None:
            remaining = (self._throttled_until - self.queue.now()).total_seconds()
            self._throttled_until = None
            if remaining > 0:
                return min(timeout, remaining)

        try:
            due = await self.queue.next_due(self.config.name)
        except Exception as e:
            logger.debug("Next-due lookup failed, using poll interval: %s", str(e))
            return timeout
        if due is not None:
            until_due = (due - self.queue.now()).total_seconds()
            timeout = min(timeout, max(until_due, 0.0))
        return timeout

    async def _wait_for_work(self) -> None:
        """Block until a job is submitted, a slot frees up, a throttle ends or a delayed job comes due."""
        timeout = await self._wait_timeout()
        if timeout <= 0:
            return

        if self.in_flight >= self.config.concurrency:
            await asyncio.wait(set(self._in_flight), timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
            return

        if self.redis is None:
            await asyncio.sleep(timeout)
            return

        notify_key = queue_notify_key(self.config.name)
        try:
            # BRPOP blocks until a notification arrives or timeout expires
            result = await self.redis.brpop(notify_key, timeout=max(1, math.ceil(timeout)))
            if result:
                # Drain any additional notifications to avoid stacking
                while await self.redis.rpop(notify_key):
                    pass
        except Exception as e:
            # If Redis is unavailable, fall back to sleep
            logger.debug("Redis BRPOP unavailable, falling back to sleep: %s", str(e))
            await asyncio.sleep(timeout)

    async def run(self) -> None:
        """Main loop - claim, run, then wait for a notification or poll."""
        logger.info(
            "Delivery worker %s started (concurrency=%d, rate=%d/%.1fs)",
            self.worker_id, self.config.concurrency,
            self.config.rate_limit, self.config.rate_window_seconds,
            extra={"queue": self.config.name},
        )

        while not self._stopping.is_set():
            try:
                await self.process_cycle()
            except Exception as e:
                logger.error(
                    "Delivery worker %s cycle error: %s", self.name, str(e),
                    extra={"queue": self.config.name},
                )

            await self._heartbeat()
            await self._wait_for_work()

    async def stop(self, timeout: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Stop claiming, then give in-flight jobs `timeout` seconds to finish."""
        self._stopping.set()
        if not self._in_flight:
            return

        logger.info(
            "Delivery worker %s draining %d in-flight jobs", self.name, self.in_flight,
            extra={"queue": self.config.name},
        )
        _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning(
                "Delivery worker %s abandoned %d jobs at shutdown", self.name, len(pending),
                extra={"queue": self.config.name},
            )
