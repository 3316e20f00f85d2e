"""
Job submission and status endpoints.

- POST /api/v1/queues/{queue_name}/jobs          - enqueue a delivery job
- GET  /api/v1/queues/{queue_name}/jobs/{job_id} - job status
- GET  /api/v1/queues                            - per-queue counts by state
"""
import logging

from fastapi import APIRouter, Depends, HTTPException

from leadrelay.api.deps import get_container
from leadrelay.schemas.delivery import JobStatusResponse, SubmitJobRequest, SubmitJobResponse
from leadrelay.services.container import ServiceContainer
from leadrelay.services.errors import QueueUnavailable, UnknownQueueError

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/queues", tags=["queues"])


@router.get("")
async def list_queues(container: ServiceContainer = Depends(get_container)):
    counts = await container.job_queue.queue_counts()
    return {
        "queues": [
            {
                "name": name,
                "concurrency": config.concurrency,
                "rate_limit": config.rate_limit,
                "rate_window_seconds": config.rate_window_seconds,
                "counts": counts.get(name, {}),
            }
            for name, config in container.queue_configs.items()
        ]
    }


@router.post("/{queue_name}/jobs", status_code=202, response_model=SubmitJobResponse)
async def submit_job(
    queue_name: str,
    body: SubmitJobRequest,
    container: ServiceContainer = Depends(get_container),
):
    try:
        job_id = await container.job_queue.submit(
            queue_name,
            body.payload,
            priority=body.priority,
            delay_ms=body.delay_ms,
            max_attempts=body.max_attempts,
        )
    except UnknownQueueError:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {queue_name}")
    except QueueUnavailable:
        raise HTTPException(status_code=503, detail="Queue temporarily unavailable")

    return SubmitJobResponse(job_id=job_id, queue_name=queue_name)


@router.get("/{queue_name}/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(
    queue_name: str,
    job_id: str,
    container: ServiceContainer = Depends(get_container),
):
    try:
        status = await container.job_queue.get_status(queue_name, job_id)
    except UnknownQueueError:
        raise HTTPException(status_code=404, detail=f"Unknown queue: {queue_name}")

    if status is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobStatusResponse(**status.to_dict())
