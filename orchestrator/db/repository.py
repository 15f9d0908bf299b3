"""
Job repository for database operations.
Implements the data access patterns for durable job records.
"""

import logging
from datetime import datetime
from typing import Any, Sequence
from uuid import UUID

from sqlalchemy import and_, delete, func, select, true, update
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.constants import JobStatus
from orchestrator.db.models import Job, utcnow

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for durable job records.

    Status transitions are single UPDATE ... RETURNING statements keyed
    by id, so one call can never touch another job's row.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        job_type: str,
        queue: str,
        tenant_id: str | None,
        payload: dict[str, Any],
        max_attempts: int = 3,
        priority: int = 0,
        status: JobStatus = JobStatus.PENDING,
        attempts: int = 0,
        scheduled_for: datetime | None = None,
    ) -> Job:
        """
        Insert a new job record.

        Args:
            job_type: The job type name.
            queue: The owning queue.
            tenant_id: Tenant, or None for fan-out jobs.
            payload: The job payload.
            max_attempts: Attempt limit the broker will apply.
            priority: Broker priority (lower runs first).
            status: Initial status, PENDING for producer-created records.
            attempts: Initial attempt count.
            scheduled_for: When a delayed job becomes due.

        Returns:
            The created Job.
        """
        now = utcnow()
        job = Job(
            type=job_type,
            queue=queue,
            tenant_id=tenant_id,
            payload=payload,
            max_attempts=max_attempts,
            priority=priority,
            status=status,
            attempts=attempts,
            scheduled_for=scheduled_for,
            started_at=now if status == JobStatus.RUNNING else None,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.info(
            "Created job record",
            extra={
                "durable_job_id": str(job.id),
                "job_type": job_type,
                "tenant_id": tenant_id,
                "status": status.value,
            },
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        queue: str | None = None,
        job_type: str | None = None,
        status: JobStatus | None = None,
        tenant_id: str | None = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[Sequence[Job], int]:
        """
        List jobs with optional filtering, newest first.

        Returns:
            Tuple of (jobs, total_count).
        """
        filters = []
        if queue is not None:
            filters.append(Job.queue == queue)
        if job_type is not None:
            filters.append(Job.type == job_type)
        if status is not None:
            filters.append(Job.status == status)
        if tenant_id is not None:
            filters.append(Job.tenant_id == tenant_id)
        where = and_(true(), *filters)

        count_stmt = select(func.count()).select_from(Job).where(where)
        total = (await self._session.execute(count_stmt)).scalar() or 0

        stmt = (
            select(Job)
            .where(where)
            .order_by(Job.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all(), total

    async def find_outstanding(self, tenant_id: str, job_type: str) -> Sequence[Job]:
        """Jobs of a type for a tenant that have not reached a terminal status."""
        stmt = select(Job).where(
            and_(
                Job.tenant_id == tenant_id,
                Job.type == job_type,
                Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def mark_running(self, job_id: UUID, attempts: int) -> Job | None:
        """
        Transition a job to RUNNING for the given attempt.

        started_at keeps the first start; completed_at is cleared in case
        a settled item was redelivered.
        """
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(
                status=JobStatus.RUNNING,
                attempts=attempts,
                started_at=func.coalesce(Job.started_at, now),
                completed_at=None,
                updated_at=now,
            )
            .returning(Job)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def mark_completed(self, job_id: UUID, result: Any = None) -> Job | None:
        """Transition a job to COMPLETED, storing the handler's result."""
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(
                status=JobStatus.COMPLETED,
                result=result,
                completed_at=now,
                updated_at=now,
            )
            .returning(Job)
        )
        row = await self._session.execute(stmt)
        return row.scalar_one_or_none()

    async def mark_failed(self, job_id: UUID, error: str) -> Job | None:
        """Transition a job to FAILED, storing the error message."""
        now = utcnow()
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(
                status=JobStatus.FAILED,
                error=error,
                completed_at=now,
                updated_at=now,
            )
            .returning(Job)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def record_retry(self, job_id: UUID, error: str) -> Job | None:
        """
        Store the error of a failed attempt that the broker will retry.

        Only touches RUNNING records; the status does not change.
        """
        stmt = (
            update(Job)
            .where(and_(Job.id == job_id, Job.status == JobStatus.RUNNING))
            .values(error=error, updated_at=utcnow())
            .returning(Job)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_broker_ref(self, job_id: UUID, broker_ref: str) -> bool:
        stmt = (
            update(Job)
            .where(Job.id == job_id)
            .values(broker_ref=broker_ref, updated_at=utcnow())
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def delete_job(self, job_id: UUID) -> bool:
        """
        Delete a job record.

        Only used to roll back a record whose broker item was never
        written; history is otherwise kept.
        """
        result = await self._session.execute(delete(Job).where(Job.id == job_id))
        return result.rowcount > 0

    async def get_job_stats(self, queue: str | None = None) -> dict[str, int]:
        """
        Get job counts by status.

        Args:
            queue: Optional queue filter.

        Returns:
            Dictionary of status -> count, every status present.
        """
        stmt = select(Job.status, func.count()).group_by(Job.status)
        if queue is not None:
            stmt = stmt.where(Job.queue == queue)

        result = await self._session.execute(stmt)
        stats = {status.value: 0 for status in JobStatus}
        for status, count in result.all():
            stats[JobStatus(status).value] = count
        return stats
