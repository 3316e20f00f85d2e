"""
Job queue - dispatcher and lifecycle state machine for delivery jobs.

    waiting --> active --> completed
       ^          |
       |          +--> failed --> retrying --> waiting ...  (attempts remain)
       |          |                  |
       |          |                  +-------> active       (claimed once due)
       |          |
       |          +--> failed --> dead                      (permanent / exhausted)
       |          |
       +----------+  stall recovery (once per job)

A retrying job is one waiting out its backoff. Maintenance promotes it to
waiting once delay_until passes; a worker may also claim it directly.

Producers call submit(); workers call claim(), complete() and fail().
fail() hands the retry decision to the queue's RetryPolicy.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from leadrelay.config import QueueConfig, RetentionSettings
from leadrelay.models.delivery_job import (
    DeliveryJob,
    JobState,
    Priority,
    PRIORITY_RANKS,
    TERMINAL_STATES,
)
from leadrelay.services.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    QueueUnavailable,
    UnknownQueueError,
)
from leadrelay.services.job_repository import JobRepository
from leadrelay.services.retry_policy import RetryPolicy
from leadrelay.utils.redis import make_key

logger = logging.getLogger(__name__)

MAX_STALLED_COUNT = 1
STALLED_ERROR = "job stalled more than allowable limit"

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.WAITING: frozenset({JobState.ACTIVE}),
    JobState.ACTIVE: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.WAITING}),
    JobState.FAILED: frozenset({JobState.RETRYING, JobState.DEAD}),
    JobState.RETRYING: frozenset({JobState.ACTIVE, JobState.WAITING}),
    JobState.COMPLETED: frozenset(),
    JobState.DEAD: frozenset(),
}


def check_transition(job_id: str, current: str, target: JobState) -> None:
    """Raise InvalidTransitionError if `current -> target` is not in the state machine."""
    if target not in ALLOWED_TRANSITIONS[JobState(current)]:
        raise InvalidTransitionError(job_id, current, target.value)


def queue_notify_key(queue_name: str) -> str:
    return make_key("queue_notify", queue_name)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    queue_name: str
    state: str
    attempts: int
    max_attempts: int
    progress: Optional[dict] = None
    result: Optional[dict] = None
    failure_reason: Optional[str] = None
    delay_until: Optional[datetime] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "state": self.state,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "progress": self.progress,
            "result": self.result,
            "failure_reason": self.failure_reason,
            "delay_until": self.delay_until.isoformat() if self.delay_until else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class JobQueue:
    """Dispatcher and lifecycle manager for every configured delivery queue."""

    def __init__(
        self,
        repository: JobRepository,
        queues: Mapping[str, QueueConfig],
        redis=None,
        clock: Optional[Callable[[], datetime]] = None,
        policies: Optional[Mapping[str, RetryPolicy]] = None,
    ):
        self.repository = repository
        self.queues = dict(queues)
        self.redis = redis
        self._clock = clock or _utcnow
        self.policies: dict[str, RetryPolicy] = {
            name: RetryPolicy.from_settings(cfg.retry) for name, cfg in self.queues.items()
        }
        if policies:
            self.policies.update(policies)

    def now(self) -> datetime:
        return self._clock()

    def _queue_config(self, queue_name: str) -> QueueConfig:
        config = self.queues.get(queue_name)
        if config is None:
            raise UnknownQueueError(f"Unknown queue: {queue_name}")
        return config

    async def submit(
        self,
        queue_name: str,
        payload: Optional[dict] = None,
        priority: Priority | str = Priority.NORMAL,
        delay_ms: int = 0,
        max_attempts: Optional[int] = None,
    ) -> str:
        """
        Enqueue a job for background delivery.

        Args:
            queue_name: direct-message, transactional-email or bulk-campaign
            payload: Channel-specific data (recipient, content, metadata)
            priority: high, normal or low
            delay_ms: Delay before the job becomes eligible (scheduled sends)
            max_attempts: Override the queue's retry policy attempt budget

        Returns:
            Job ID as string

        Raises:
            QueueUnavailable: the job store could not be reached; nothing was queued.
        """
        self._queue_config(queue_name)
        priority = Priority(priority)
        if delay_ms < 0:
            raise ValueError("delay_ms must be non-negative")

        now = self.now()
        job = DeliveryJob(
            id=uuid.uuid4(),
            queue_name=queue_name,
            payload=payload or {},
            state=JobState.WAITING.value,
            priority=PRIORITY_RANKS[priority],
            attempts=0,
            max_attempts=max_attempts or self.policies[queue_name].max_attempts,
            stalled_count=0,
            delay_until=now + timedelta(milliseconds=delay_ms),
            created_at=now,
            updated_at=now,
        )

        try:
            await self.repository.create(job)
        except (SQLAlchemyError, OSError) as e:
            logger.error(
                "Job store unavailable, submission to %s rejected: %s",
                queue_name, str(e),
                extra={"queue": queue_name},
            )
            raise QueueUnavailable(f"Job store unavailable: {e}") from e

        job_id = str(job.id)
        logger.info(
            "Job enqueued: queue=%s priority=%s delay=%dms id=%s",
            queue_name, priority.value, delay_ms, job_id[:8],
            extra={"queue": queue_name, "job_id": job_id},
        )

        # Wake an idle worker so it can pick the job up or re-arm its timer for a delayed one
        if self.redis is not None:
            try:
                await self.redis.lpush(queue_notify_key(queue_name), job_id)
            except Exception as e:
                logger.debug("Failed to notify %s workers: %s", queue_name, str(e))

        return job_id

    async def claim(
        self,
        queue_name: str,
        concurrency_limit: Optional[int] = None,
        worker_id: str = "worker",
    ) -> Optional[DeliveryJob]:
        """Claim the next eligible job, or None if nothing is due or the queue is at its limit."""
        config = self._queue_config(queue_name)
        limit = concurrency_limit if concurrency_limit is not None else config.concurrency
        job = await self.repository.claim_next(queue_name, limit, worker_id, self.now())
        if job is not None:
            logger.debug(
                "Job claimed: queue=%s id=%s attempt=%d/%d worker=%s",
                queue_name, str(job.id)[:8], job.attempts, job.max_attempts, worker_id,
                extra={"queue": queue_name, "job_id": str(job.id)},
            )
        return job

    async def _load(self, job_id) -> DeliveryJob:
        job = await self.repository.get(job_id)
        if job is None:
            raise JobNotFoundError(f"Job {str(job_id)[:8]} not found")
        return job

    def _still_owned(self, job: DeliveryJob, worker_id: Optional[str], action: str) -> bool:
        """False if stall recovery handed the job to someone else mid-send."""
        if job.state in TERMINAL_STATES:
            raise InvalidTransitionError(str(job.id), job.state, action)
        if job.state != JobState.ACTIVE.value or (worker_id and job.worker_id != worker_id):
            logger.warning(
                "Job %s %s after losing ownership; ignored",
                str(job.id)[:8], action,
                extra={"job_id": str(job.id)},
            )
            return False
        return True

    async def complete(self, job_id, result: Optional[dict] = None, worker_id: Optional[str] = None) -> None:
        job = await self._load(job_id)
        if not self._still_owned(job, worker_id, JobState.COMPLETED.value):
            return
        check_transition(str(job.id), job.state, JobState.COMPLETED)

        now = self.now()
        updated = await self.repository.update(
            job.id,
            [JobState.ACTIVE.value],
            expected_owner=worker_id,
            state=JobState.COMPLETED.value,
            result=result,
            completed_at=now,
            updated_at=now,
            last_error=None,
        )
        if not updated:
            # Stall recovery moved it while the send was in flight
            logger.warning(
                "Job %s finished after losing ownership; completion ignored",
                str(job.id)[:8],
                extra={"job_id": str(job.id)},
            )
            return

        logger.info(
            "Job completed: queue=%s id=%s attempts=%d",
            job.queue_name, str(job.id)[:8], job.attempts,
            extra={"queue": job.queue_name, "job_id": str(job.id)},
        )

    async def fail(self, job_id, error: Exception, worker_id: Optional[str] = None) -> str:
        """
        Record a failed attempt and apply the queue's retry policy.

        Returns the state the job ended in: "retrying" or "dead".
        """
        job = await self._load(job_id)
        if not self._still_owned(job, worker_id, JobState.FAILED.value):
            return job.state
        check_transition(str(job.id), job.state, JobState.FAILED)

        policy = self.policies[job.queue_name]
        attempts = job.attempts
        # Per-job budget wins over the queue default
        budget_policy = policy
        if job.max_attempts != policy.max_attempts:
            budget_policy = RetryPolicy(
                max_attempts=job.max_attempts,
                initial_delay=policy.initial_delay,
                max_delay=policy.max_delay,
                jitter=policy.jitter,
            )
        decision = budget_policy.decide(attempts, error)
        error_msg = f"{type(error).__name__}: {error}"
        now = self.now()

        if decision.retry:
            check_transition(str(job.id), JobState.FAILED.value, JobState.RETRYING)
            target = JobState.RETRYING
            values: dict[str, Any] = {
                "state": JobState.RETRYING.value,
                "delay_until": now + timedelta(seconds=decision.delay_seconds),
                "last_error": error_msg,
                "worker_id": None,
                "updated_at": now,
            }
        else:
            check_transition(str(job.id), JobState.FAILED.value, JobState.DEAD)
            target = JobState.DEAD
            values = {
                "state": JobState.DEAD.value,
                "last_error": error_msg,
                "completed_at": now,
                "worker_id": None,
                "updated_at": now,
            }

        updated = await self.repository.update(
            job.id, [JobState.ACTIVE.value], expected_owner=worker_id, **values
        )
        if not updated:
            logger.warning(
                "Job %s failed after losing ownership; failure ignored",
                str(job.id)[:8],
                extra={"job_id": str(job.id)},
            )
            return job.state

        if target == JobState.RETRYING:
            logger.warning(
                "Job retry %d/%d: queue=%s id=%s backoff=%.1fs error=%s",
                attempts, job.max_attempts, job.queue_name, str(job.id)[:8],
                decision.delay_seconds, error_msg,
                extra={"queue": job.queue_name, "job_id": str(job.id)},
            )
        else:
            logger.error(
                "Job dead-lettered (%s): queue=%s id=%s attempts=%d error=%s",
                decision.reason, job.queue_name, str(job.id)[:8], attempts, error_msg,
                extra={
                    "queue": job.queue_name,
                    "job_id": str(job.id),
                    "error_code": getattr(error, "error_code", None),
                },
            )
        return target.value

    async def update_progress(self, job_id, progress: dict, worker_id: Optional[str] = None) -> bool:
        return await self.repository.update(
            job_id,
            [JobState.ACTIVE.value],
            expected_owner=worker_id,
            progress=progress,
            updated_at=self.now(),
        )

    async def next_due(self, queue_name: str) -> Optional[datetime]:
        """When the next delayed or backing-off job in the queue becomes eligible."""
        self._queue_config(queue_name)
        return _as_utc(await self.repository.next_due(queue_name, self.now()))

    async def promote_due_retries(self, queue_name: str) -> int:
        """Move retrying jobs whose backoff has elapsed back to waiting."""
        self._queue_config(queue_name)
        promoted = await self.repository.promote_due(queue_name, self.now())
        if promoted:
            logger.debug(
                "Promoted %d retrying jobs to waiting on %s", promoted, queue_name,
                extra={"queue": queue_name},
            )
        return promoted

    async def get_status(self, queue_name: str, job_id) -> Optional[JobStatus]:
        """
        Status of a job, or None if it does not exist in that queue (or was pruned).

        "retrying" means the job failed and is waiting out its backoff until
        delay_until; after that it reads as "waiting" until claimed.
        """
        self._queue_config(queue_name)
        job = await self.repository.get(job_id)
        if job is None or job.queue_name != queue_name:
            return None

        failure_reason = None
        if job.state in (JobState.DEAD.value, JobState.RETRYING.value, JobState.FAILED.value):
            failure_reason = job.last_error

        return JobStatus(
            job_id=str(job.id),
            queue_name=job.queue_name,
            state=job.state,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            progress=job.progress,
            result=job.result,
            failure_reason=failure_reason,
            delay_until=_as_utc(job.delay_until),
            created_at=_as_utc(job.created_at),
            completed_at=_as_utc(job.completed_at),
        )

    async def queue_counts(self) -> dict[str, dict[str, int]]:
        return {name: await self.repository.count_by_state(name) for name in self.queues}

    async def recover_stalled(self, queue_name: str, stall_timeout_seconds: float) -> dict[str, int]:
        """
        Return jobs stuck in active back to waiting.

        A job gets one second chance. If it stalls again, or its attempt
        budget is already spent, it is dead-lettered so a poison message
        cannot loop forever.
        """
        self._queue_config(queue_name)
        now = self.now()
        cutoff = now - timedelta(seconds=stall_timeout_seconds)
        stalled = await self.repository.find_stalled(queue_name, cutoff)
        recovered = 0
        dead = 0

        for job in stalled:
            if job.stalled_count < MAX_STALLED_COUNT and job.attempts < job.max_attempts:
                ok = await self.repository.update(
                    job.id,
                    [JobState.ACTIVE.value],
                    expected_owner=job.worker_id,
                    state=JobState.WAITING.value,
                    stalled_count=job.stalled_count + 1,
                    worker_id=None,
                    updated_at=now,
                    delay_until=now,
                )
                if ok:
                    recovered += 1
                    logger.warning(
                        "Stalled job returned to waiting: queue=%s id=%s",
                        queue_name, str(job.id)[:8],
                        extra={"queue": queue_name, "job_id": str(job.id)},
                    )
            else:
                ok = await self.repository.update(
                    job.id,
                    [JobState.ACTIVE.value],
                    expected_owner=job.worker_id,
                    state=JobState.DEAD.value,
                    last_error=STALLED_ERROR,
                    completed_at=now,
                    worker_id=None,
                    updated_at=now,
                )
                if ok:
                    dead += 1
                    logger.error(
                        "Stalled job dead-lettered: queue=%s id=%s",
                        queue_name, str(job.id)[:8],
                        extra={"queue": queue_name, "job_id": str(job.id)},
                    )

        return {"recovered": recovered, "dead": dead}

    async def prune(self, queue_name: str, retention: Optional[RetentionSettings] = None) -> int:
        """Delete finished jobs beyond the queue's retention window."""
        config = self._queue_config(queue_name)
        retention = retention or config.retention
        now = self.now()

        removed = await self.repository.prune(
            queue_name,
            [JobState.COMPLETED.value],
            now - timedelta(seconds=retention.completed_max_age_seconds),
            retention.completed_max_count,
        )
        removed += await self.repository.prune(
            queue_name,
            [JobState.DEAD.value],
            now - timedelta(seconds=retention.failed_max_age_seconds),
            retention.failed_max_count,
        )
        if removed:
            logger.info(
                "Pruned %d finished jobs from %s", removed, queue_name,
                extra={"queue": queue_name},
            )
        return removed