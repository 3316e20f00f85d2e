"""
Job store - the durable, shared state every worker process polls.

JobQueue depends only on the JobRepository interface. The SQLAlchemy
implementation guarantees single-owner execution with compare-and-set
UPDATEs: a row only changes state if it is still in the state the caller
saw, so two workers can never both move the same job to active.
"""
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, Optional, Sequence

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased

from leadrelay.models.delivery_job import CLAIMABLE_STATES, DeliveryJob, JobState

logger = logging.getLogger(__name__)

# Claims lost to a concurrent worker are retried this many times per call
CLAIM_CONFLICT_RETRIES = 5


def _as_uuid(job_id) -> Optional[uuid.UUID]:
    if isinstance(job_id, uuid.UUID):
        return job_id
    try:
        return uuid.UUID(str(job_id))
    except (TypeError, ValueError):
        return None


class JobRepository(ABC):
    """Persistence interface for delivery jobs."""

    @abstractmethod
    async def find(
        self,
        queue_name: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        limit: int = 100,
    ) -> list[DeliveryJob]:
        ...

    @abstractmethod
    async def get(self, job_id) -> Optional[DeliveryJob]:
        ...

    @abstractmethod
    async def create(self, job: DeliveryJob) -> DeliveryJob:
        ...

    @abstractmethod
    async def update(
        self,
        job_id,
        expected_states: Sequence[str],
        *,
        expected_owner: Optional[str] = None,
        **values,
    ) -> bool:
        """
        Apply `values` only if the job is still in one of `expected_states`
        and, when `expected_owner` is given, still held by that worker.
        """

    @abstractmethod
    async def delete(self, job_ids: Iterable) -> int:
        ...

    @abstractmethod
    async def claim_next(
        self,
        queue_name: str,
        concurrency_limit: int,
        worker_id: str,
        now: datetime,
    ) -> Optional[DeliveryJob]:
        ...

    @abstractmethod
    async def next_due(self, queue_name: str, now: datetime) -> Optional[datetime]:
        """Earliest future delay_until among claimable jobs."""

    @abstractmethod
    async def promote_due(self, queue_name: str, now: datetime) -> int:
        """Move retrying jobs whose backoff has elapsed back to waiting."""

    @abstractmethod
    async def count_by_state(self, queue_name: str) -> dict[str, int]:
        ...

    @abstractmethod
    async def find_stalled(self, queue_name: str, started_before: datetime) -> list[DeliveryJob]:
        ...

    @abstractmethod
    async def prune(
        self,
        queue_name: str,
        states: Sequence[str],
        finished_before: datetime,
        keep_latest: int,
    ) -> int:
        ...


class SqlAlchemyJobRepository(JobRepository):
    """Job store backed by PostgreSQL (or SQLite in tests)."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def find(
        self,
        queue_name: Optional[str] = None,
        states: Optional[Iterable[str]] = None,
        limit: int = 100,
    ) -> list[DeliveryJob]:
        query = select(DeliveryJob)
        if queue_name:
            query = query.where(DeliveryJob.queue_name == queue_name)
        if states:
            query = query.where(DeliveryJob.state.in_(list(states)))
        query = query.order_by(DeliveryJob.created_at.desc()).limit(limit)

        async with self._session_factory() as db:
            result = await db.execute(query)
            return list(result.scalars().all())

    async def get(self, job_id) -> Optional[DeliveryJob]:
        job_uuid = _as_uuid(job_id)
        if job_uuid is None:
            return None
        async with self._session_factory() as db:
            return await db.get(DeliveryJob, job_uuid)

    async def create(self, job: DeliveryJob) -> DeliveryJob:
        async with self._session_factory() as db:
            db.add(job)
            await db.commit()
        return job

    async def update(
        self,
        job_id,
        expected_states: Sequence[str],
        *,
        expected_owner: Optional[str] = None,
        **values,
    ) -> bool:
        job_uuid = _as_uuid(job_id)
        if job_uuid is None:
            return False
        conditions = [
            DeliveryJob.id == job_uuid,
            DeliveryJob.state.in_(list(expected_states)),
        ]
        if expected_owner is not None:
            conditions.append(DeliveryJob.worker_id == expected_owner)
        async with self._session_factory() as db:
            result = await db.execute(
                update(DeliveryJob)
                .where(and_(*conditions))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def delete(self, job_ids: Iterable) -> int:
        ids = [u for u in (_as_uuid(j) for j in job_ids) if u is not None]
        if not ids:
            return 0
        async with self._session_factory() as db:
            result = await db.execute(
                delete(DeliveryJob)
                .where(DeliveryJob.id.in_(ids))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    async def claim_next(
        self,
        queue_name: str,
        concurrency_limit: int,
        worker_id: str,
        now: datetime,
    ) -> Optional[DeliveryJob]:
        """
        Atomically move the next eligible job to active.

        Ordering: priority ascending, then delay_until, then enqueue time.
        The concurrency check is part of the same UPDATE so a burst of
        workers cannot push a queue past its active limit.
        """
        active_jobs = aliased(DeliveryJob)
        active_count = (
            select(func.count())
            .select_from(active_jobs)
            .where(
                and_(
                    active_jobs.queue_name == queue_name,
                    active_jobs.state == JobState.ACTIVE.value,
                )
            )
            .scalar_subquery()
        )

        async with self._session_factory() as db:
            for _ in range(CLAIM_CONFLICT_RETRIES):
                result = await db.execute(
                    select(DeliveryJob.id)
                    .where(
                        and_(
                            DeliveryJob.queue_name == queue_name,
                            DeliveryJob.state.in_(CLAIMABLE_STATES),
                            DeliveryJob.attempts < DeliveryJob.max_attempts,
                            DeliveryJob.delay_until <= now,
                        )
                    )
                    .order_by(
                        DeliveryJob.priority,
                        DeliveryJob.delay_until,
                        DeliveryJob.created_at,
                    )
                    .limit(1)
                )
                candidate_id = result.scalar_one_or_none()
                if candidate_id is None:
                    return None

                claimed = await db.execute(
                    update(DeliveryJob)
                    .where(
                        and_(
                            DeliveryJob.id == candidate_id,
                            DeliveryJob.state.in_(CLAIMABLE_STATES),
                            DeliveryJob.attempts < DeliveryJob.max_attempts,
                            active_count < concurrency_limit,
                        )
                    )
                    .values(
                        state=JobState.ACTIVE.value,
                        attempts=DeliveryJob.attempts + 1,
                        started_at=now,
                        updated_at=now,
                        worker_id=worker_id,
                    )
                    .execution_options(synchronize_session=False)
                )
                await db.commit()

                if claimed.rowcount == 1:
                    return await db.get(DeliveryJob, candidate_id, populate_existing=True)

                # Either another worker took the candidate or the queue is full
                count_result = await db.execute(
                    select(func.count())
                    .select_from(DeliveryJob)
                    .where(
                        and_(
                            DeliveryJob.queue_name == queue_name,
                            DeliveryJob.state == JobState.ACTIVE.value,
                        )
                    )
                )
                if (count_result.scalar() or 0) >= concurrency_limit:
                    return None

            logger.debug("Claim on %s lost %d races, backing off", queue_name, CLAIM_CONFLICT_RETRIES)
            return None

    async def next_due(self, queue_name: str, now: datetime) -> Optional[datetime]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.min(DeliveryJob.delay_until))
                .where(
                    and_(
                        DeliveryJob.queue_name == queue_name,
                        DeliveryJob.state.in_(CLAIMABLE_STATES),
                        DeliveryJob.delay_until > now,
                    )
                )
            )
            return result.scalar()

    async def promote_due(self, queue_name: str, now: datetime) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                update(DeliveryJob)
                .where(
                    and_(
                        DeliveryJob.queue_name == queue_name,
                        DeliveryJob.state == JobState.RETRYING.value,
                        DeliveryJob.delay_until <= now,
                    )
                )
                .values(state=JobState.WAITING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0

    async def count_by_state(self, queue_name: str) -> dict[str, int]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(DeliveryJob.state, func.count())
                .where(DeliveryJob.queue_name == queue_name)
                .group_by(DeliveryJob.state)
            )
            counts = {state.value: 0 for state in JobState}
            for state, count in result.all():
                counts[state] = count
            return counts

    async def find_stalled(self, queue_name: str, started_before: datetime) -> list[DeliveryJob]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(DeliveryJob)
                .where(
                    and_(
                        DeliveryJob.queue_name == queue_name,
                        DeliveryJob.state == JobState.ACTIVE.value,
                        DeliveryJob.started_at < started_before,
                    )
                )
                .order_by(DeliveryJob.started_at)
            )
            return list(result.scalars().all())

    async def prune(
        self,
        queue_name: str,
        states: Sequence[str],
        finished_before: datetime,
        keep_latest: int,
    ) -> int:
        """Delete finished jobs older than the cutoff, or beyond the newest `keep_latest`."""
        async with self._session_factory() as db:
            finished = and_(
                DeliveryJob.queue_name == queue_name,
                DeliveryJob.state.in_(list(states)),
            )

            keep_result = await db.execute(
                select(DeliveryJob.id)
                .where(finished)
                .order_by(DeliveryJob.completed_at.desc(), DeliveryJob.created_at.desc())
                .limit(keep_latest)
            )
            keep_ids = [row for row in keep_result.scalars().all()]

            doomed = and_(finished, DeliveryJob.completed_at < finished_before)
            if keep_ids:
                doomed_by_count = and_(finished, DeliveryJob.id.not_in(keep_ids))
            else:
                doomed_by_count = finished

            result = await db.execute(
                delete(DeliveryJob)
                .where(or_(doomed, doomed_by_count))
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount or 0
