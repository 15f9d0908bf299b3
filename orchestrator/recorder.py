"""
Durable job status recorder.

Mirrors broker lifecycle transitions into the jobs table. Recording is
best effort on the worker side: a database failure is logged and never
fails the job it describes.
"""

import logging
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.broker.base import QueueItem
from orchestrator.constants import ALL_TENANTS, PAYLOAD_TENANT_ID, JobStatus
from orchestrator.db.repository import JobRepository
from orchestrator.types.events import JobEvent, JobEventKind

logger = logging.getLogger(__name__)


def durable_tenant(tenant_id: str | None) -> str | None:
    """Fan-out jobs are stored without a tenant."""
    if not tenant_id or tenant_id == ALL_TENANTS:
        return None
    return tenant_id


class JobStatusRecorder:
    """
    Writes durable job records for broker items.

    Items enqueued without a record get one lazily on their first RUNNING
    transition; the new id is returned to the caller, which is expected
    to carry it on the item for every later transition.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def create_pending(
        self,
        job_type: str,
        queue: str,
        payload: dict[str, Any],
        max_attempts: int,
        priority: int = 0,
    ) -> UUID:
        """
        Create a PENDING record ahead of the broker write.

        Errors propagate: the producer decides whether to enqueue anyway.
        """
        async with self._session_factory() as session:
            repo = JobRepository(session)
            job = await repo.create_job(
                job_type=job_type,
                queue=queue,
                tenant_id=durable_tenant(payload.get(PAYLOAD_TENANT_ID)),
                payload=payload,
                max_attempts=max_attempts,
                priority=priority,
            )
            await session.commit()
            return job.id

    async def attach_broker_ref(self, job_id: UUID, broker_ref: str) -> None:
        try:
            async with self._session_factory() as session:
                await JobRepository(session).set_broker_ref(job_id, broker_ref)
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to link job record to broker item",
                extra={"durable_job_id": str(job_id), "broker_ref": broker_ref},
            )

    async def discard(self, job_id: UUID) -> None:
        """Remove a record whose broker item was never written."""
        try:
            async with self._session_factory() as session:
                await JobRepository(session).delete_job(job_id)
                await session.commit()
        except Exception:
            logger.exception(
                "Failed to discard orphaned job record",
                extra={"durable_job_id": str(job_id)},
            )

    async def record_transition(
        self,
        item: QueueItem,
        status: JobStatus,
        *,
        result: Any = None,
        error: str | None = None,
        durable_job_id: UUID | None = None,
    ) -> UUID | None:
        """
        Record one lifecycle transition for a broker item.

        Args:
            item: The broker item, as fetched.
            status: The status being entered.
            result: Handler result, for COMPLETED.
            error: Failure message, for FAILED.
            durable_job_id: Overrides the id carried on the item.

        Returns:
            The durable id the item is now linked to, which is a new id
            when a RUNNING transition had to create the record. None when
            there is no record and none could be created.
        """
        job_id = durable_job_id or item.durable_job_id
        log_extra = {
            "queue": item.queue,
            "item_id": item.id,
            "job_type": item.name,
            "status": status.value,
        }
        try:
            async with self._session_factory() as session:
                repo = JobRepository(session)

                if status == JobStatus.RUNNING:
                    attempt = item.attempts_made + 1
                    job = None
                    if job_id is not None:
                        job = await repo.mark_running(job_id, attempt)
                    if job is None:
                        job = await repo.create_job(
                            job_type=item.name,
                            queue=item.queue,
                            tenant_id=durable_tenant(item.tenant_id),
                            payload=item.data,
                            max_attempts=item.max_attempts,
                            priority=item.opts.priority,
                            status=JobStatus.RUNNING,
                            attempts=attempt,
                        )
                        job.broker_ref = item.broker_ref
                        logger.info(
                            "Created job record on first run",
                            extra={**log_extra, "durable_job_id": str(job.id)},
                        )
                    await session.commit()
                    return job.id

                if job_id is None:
                    logger.debug("No job record to update", extra=log_extra)
                    return None

                if status == JobStatus.COMPLETED:
                    job = await repo.mark_completed(job_id, result)
                elif status == JobStatus.FAILED:
                    job = await repo.mark_failed(job_id, error or "")
                else:
                    logger.warning("Ignoring transition", extra=log_extra)
                    return job_id
                await session.commit()

                if job is None:
                    logger.warning(
                        "Job record not found",
                        extra={**log_extra, "durable_job_id": str(job_id)},
                    )
                return job_id
        except Exception:
            logger.exception(
                "Failed to record job transition",
                extra={**log_extra, "durable_job_id": str(job_id) if job_id else None},
            )
            return job_id

    async def on_event(self, event: JobEvent) -> None:
        """Lifecycle subscriber: settle the record for a completed or failed attempt."""
        if event.durable_job_id is None:
            return

        extra = {
            "durable_job_id": str(event.durable_job_id),
            "queue": event.queue,
            "item_id": event.item_id,
            "event_kind": event.kind.value,
        }
        try:
            async with self._session_factory() as session:
                repo = JobRepository(session)
                if event.kind == JobEventKind.COMPLETED:
                    await repo.mark_completed(event.durable_job_id, event.result)
                elif event.attempts_exhausted:
                    await repo.mark_failed(event.durable_job_id, event.error or "")
                else:
                    # The broker will redeliver; keep RUNNING, keep the error
                    await repo.record_retry(event.durable_job_id, event.error or "")
                await session.commit()
        except Exception:
            logger.exception("Failed to record job event", extra=extra)
