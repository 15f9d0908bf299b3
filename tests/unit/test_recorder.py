"""
Unit tests for the durable job status recorder.
"""

from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.broker import ItemOptions, QueueItem
from orchestrator.constants import JobStatus
from orchestrator.db.repository import JobRepository
from orchestrator.recorder import JobStatusRecorder, durable_tenant
from orchestrator.types.events import JobEvent


def make_item(data: dict | None = None, attempts_made: int = 0, attempts: int = 3) -> QueueItem:
    return QueueItem(
        id="7",
        queue="seo",
        name="SITE_SCAN",
        data=data if data is not None else {"tenant_id": "t1"},
        opts=ItemOptions(attempts=attempts, priority=2),
        attempts_made=attempts_made,
    )


async def load(session_factory: async_sessionmaker[AsyncSession], job_id):
    async with session_factory() as session:
        return await JobRepository(session).get_job(job_id)


async def count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        _, total = await JobRepository(session).list_jobs()
        return total


class TestJobStatusRecorder:
    """Tests for JobStatusRecorder."""

    def test_fan_out_tenant_is_stored_as_null(self):
        assert durable_tenant("all") is None
        assert durable_tenant(None) is None
        assert durable_tenant("t1") == "t1"

    async def test_create_pending(self, recorder: JobStatusRecorder, session_factory):
        job_id = await recorder.create_pending(
            job_type="SITE_SCAN",
            queue="seo",
            payload={"tenant_id": "t1"},
            max_attempts=5,
            priority=1,
        )
        await recorder.attach_broker_ref(job_id, "seo:1")

        job = await load(session_factory, job_id)
        assert job.status == JobStatus.PENDING
        assert job.tenant_id == "t1"
        assert job.max_attempts == 5
        assert job.broker_ref == "seo:1"

    async def test_running_creates_record_lazily(self, recorder: JobStatusRecorder, session_factory):
        """An item with no durable id gets one on its first run, returned to the caller."""
        item = make_item({"tenant_id": "all"})

        job_id = await recorder.record_transition(item, JobStatus.RUNNING)

        assert job_id is not None
        job = await load(session_factory, job_id)
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 1
        assert job.tenant_id is None
        assert job.priority == 2
        assert job.broker_ref == "seo:7"
        assert job.started_at is not None

    async def test_running_with_id_updates_existing(self, recorder: JobStatusRecorder, session_factory):
        job_id = await recorder.create_pending("SITE_SCAN", "seo", {"tenant_id": "t1"}, 3)
        item = make_item({"tenant_id": "t1", "durable_job_id": str(job_id)}, attempts_made=1)

        returned = await recorder.record_transition(item, JobStatus.RUNNING)

        assert returned == job_id
        job = await load(session_factory, job_id)
        assert job.status == JobStatus.RUNNING
        assert job.attempts == 2
        assert await count(session_factory) == 1

    async def test_running_with_stale_id_creates_new_record(self, recorder: JobStatusRecorder, session_factory):
        stale = uuid4()
        item = make_item({"tenant_id": "t1", "durable_job_id": str(stale)})

        job_id = await recorder.record_transition(item, JobStatus.RUNNING)

        assert job_id is not None and job_id != stale
        assert (await load(session_factory, job_id)).status == JobStatus.RUNNING

    async def test_settled_transition_without_record_is_skipped(self, recorder: JobStatusRecorder, session_factory):
        assert await recorder.record_transition(make_item(), JobStatus.COMPLETED, result=1) is None
        assert await count(session_factory) == 0

    async def test_database_errors_never_raise(self, async_engine):
        recorder = JobStatusRecorder(async_sessionmaker(bind=async_engine))
        async with async_engine.begin() as conn:
            await conn.exec_driver_sql("DROP TABLE jobs")

        job_id = uuid4()
        item = make_item({"tenant_id": "t1", "durable_job_id": str(job_id)})

        assert await recorder.record_transition(item, JobStatus.RUNNING) == job_id
        await recorder.on_event(
            JobEvent.completed(
                queue="seo", item_id="7", job_type="SITE_SCAN", attempts_made=1, max_attempts=3,
                durable_job_id=job_id,
            )
        )

    async def test_events_settle_the_record(self, recorder: JobStatusRecorder, session_factory):
        job_id = await recorder.create_pending("SITE_SCAN", "seo", {"tenant_id": "t1"}, 3)
        item = make_item({"tenant_id": "t1", "durable_job_id": str(job_id)})
        await recorder.record_transition(item, JobStatus.RUNNING)

        def failed(attempts_made: int) -> JobEvent:
            return JobEvent.failed(
                queue="seo",
                item_id="7",
                job_type="SITE_SCAN",
                attempts_made=attempts_made,
                max_attempts=3,
                error=f"attempt {attempts_made} failed",
                durable_job_id=job_id,
            )

        await recorder.on_event(failed(1))
        job = await load(session_factory, job_id)
        assert job.status == JobStatus.RUNNING
        assert job.error == "attempt 1 failed"

        await recorder.on_event(failed(3))
        job = await load(session_factory, job_id)
        assert job.status == JobStatus.FAILED
        assert job.completed_at is not None

    async def test_completed_event(self, recorder: JobStatusRecorder, session_factory):
        job_id = await recorder.create_pending("SITE_SCAN", "seo", {"tenant_id": "t1"}, 3)

        await recorder.on_event(
            JobEvent.completed(
                queue="seo", item_id="7", job_type="SITE_SCAN", attempts_made=1, max_attempts=3,
                durable_job_id=job_id, result={"pages": 3},
            )
        )

        job = await load(session_factory, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result == {"pages": 3}

    async def test_discard(self, recorder: JobStatusRecorder, session_factory):
        job_id = await recorder.create_pending("SITE_SCAN", "seo", {"tenant_id": "t1"}, 3)

        await recorder.discard(job_id)

        assert await load(session_factory, job_id) is None
