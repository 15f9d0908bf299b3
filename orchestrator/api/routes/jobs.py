"""
Job submission and durable record routes.
"""

import logging
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status

from orchestrator.api.auth import CurrentOperator
from orchestrator.api.dependencies import Registry, Session
from orchestrator.constants import API_V1_PREFIX, JobStatus
from orchestrator.db.repository import JobRepository
from orchestrator.types.api import (
    EnqueueRequest,
    EnqueueResponse,
    JobListResponse,
    JobResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/jobs", tags=["Jobs"])


@router.post(
    "",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue a job",
    description="Enqueue a job on the queue that owns its type. Tenant-scoped "
    "types are deduplicated while an equivalent job is outstanding.",
)
async def enqueue_job(
    request: EnqueueRequest,
    operator: CurrentOperator,
    registry: Registry,
) -> EnqueueResponse:
    """
    Enqueue a job on behalf of an operator.

    Returns:
        EnqueueResponse; deduplicated is true when nothing was enqueued.
    """
    result = await registry.enqueue(
        request.job_type,
        request.payload,
        request.options.model_dump(exclude_none=True),
    )
    logger.info(
        "Job enqueued by operator",
        extra={
            "operator": operator.subject,
            "job_type": result.job_type.value,
            "item_id": result.item_id,
            "deduplicated": result.deduplicated,
        },
    )
    return EnqueueResponse(
        job_type=result.job_type,
        queue=result.queue.value,
        item_id=result.item_id,
        durable_job_id=result.durable_job_id,
        deduplicated=result.deduplicated,
        message=(
            "Equivalent job already outstanding, not enqueued"
            if result.deduplicated
            else "Job enqueued"
        ),
    )


@router.get(
    "/{job_id}",
    response_model=JobResponse,
    summary="Get job details",
    description="Get the durable record of a job.",
)
async def get_job(
    job_id: UUID,
    operator: CurrentOperator,
    session: Session,
) -> JobResponse:
    """
    Get job details by ID.

    Raises:
        HTTPException: If job not found.
    """
    job = await JobRepository(session).get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found",
        )
    return JobResponse.model_validate(job)


@router.get(
    "",
    response_model=JobListResponse,
    summary="List jobs",
    description="List durable job records with optional filtering.",
)
async def list_jobs(
    operator: CurrentOperator,
    session: Session,
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=20, ge=1, le=100),
    status: JobStatus | None = Query(default=None),
    queue: str | None = Query(default=None),
    job_type: str | None = Query(default=None),
    tenant_id: str | None = Query(default=None),
) -> JobListResponse:
    """List jobs, newest first."""
    offset = (page - 1) * page_size
    jobs, total = await JobRepository(session).list_jobs(
        queue=queue,
        job_type=job_type,
        status=status,
        tenant_id=tenant_id,
        limit=page_size,
        offset=offset,
    )

    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        page=page,
        page_size=page_size,
        has_next=(page * page_size) < total,
    )


@router.get(
    "/stats/summary",
    summary="Get job statistics",
    description="Durable record counts by status, optionally for one queue.",
)
async def get_job_stats(
    operator: CurrentOperator,
    session: Session,
    queue: str | None = Query(default=None),
) -> dict:
    """
    Get job statistics.

    Returns:
        Dictionary of status -> count.
    """
    stats = await JobRepository(session).get_job_stats(queue=queue)
    return {"stats": stats, "queue": queue}
