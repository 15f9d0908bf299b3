"""
Integration tests for worker functionality.

Items go through the real enqueue path, the worker pool, the lifecycle
event bus, the status recorder and the dedup controller, backed by the
in-memory broker and a SQLite job store.
"""

import asyncio
import logging
from datetime import datetime, timezone
from uuid import UUID

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.broker import Backoff, BackoffType, ItemOptions, ItemState, MemoryQueueBackend
from orchestrator.constants import PAYLOAD_DURABLE_JOB_ID, JobStatus, JobType, QueueName
from orchestrator.db.repository import JobRepository
from orchestrator.dedup import DedupController
from orchestrator.errors import ConfigurationError, NonRetryableError
from orchestrator.events import LifecycleEventBus
from orchestrator.observability.metrics import MetricsCollector
from orchestrator.queues import QueueRegistry
from orchestrator.recorder import JobStatusRecorder
from orchestrator.types.job import JobContext
from orchestrator.worker.handlers import HandlerRegistry
from orchestrator.worker.main import build_runtime
from orchestrator.worker.pool import WorkerPool


async def load_job(session_factory: async_sessionmaker[AsyncSession], job_id: UUID):
    async with session_factory() as session:
        return await JobRepository(session).get_job(job_id)


async def job_count(session_factory: async_sessionmaker[AsyncSession]) -> int:
    async with session_factory() as session:
        _, total = await JobRepository(session).list_jobs()
        return total


class NoWriteBackBackend(MemoryQueueBackend):
    async def update_data(self, queue, item_id, data):
        raise ConnectionError("broker unavailable")


class TestWorkerIntegration:
    """Integration tests for worker job processing."""

    @pytest.fixture
    def handlers(self) -> HandlerRegistry:
        return HandlerRegistry()

    @pytest.fixture
    def make_pool(
        self,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        recorder: JobStatusRecorder,
        registry: QueueRegistry,
        metrics: MetricsCollector,
    ):
        def factory(queue: str) -> WorkerPool:
            return WorkerPool(
                queue,
                1,
                backend,
                handlers,
                events,
                lock_ms=60_000,
                recorder=recorder,
                registry=registry,
                metrics=metrics,
                poll_interval=0.01,
            )

        return factory

    @staticmethod
    async def run_next(pool: WorkerPool, backend: MemoryQueueBackend, events: LifecycleEventBus) -> str:
        """Fetch, process and settle one item, then deliver its events."""
        item = await backend.fetch_next(pool.queue, "token", pool.lock_ms)
        assert item is not None
        outcome = await pool.process(item, "token")
        await events.drain()
        return outcome

    async def test_retries_then_completes(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        dedup: DedupController,
        session_factory,
        make_pool,
    ):
        """A site scan fails twice and succeeds on its third attempt."""
        attempts: list[int] = []

        @handlers.register(JobType.SITE_SCAN)
        async def flaky_scan(context: JobContext):
            attempts.append(context.attempt)
            if context.attempt < 3:
                raise TimeoutError("crawler timed out")
            return {"pages": 12}

        result = await registry.enqueue(
            JobType.SITE_SCAN,
            {"tenant_id": "t1", "url": "https://example.com"},
            {"attempts": 3, "backoff_delay_ms": 0},
        )
        pool = make_pool("seo")

        for expected in ("retrying", "retrying"):
            assert await self.run_next(pool, backend, events) == expected
            assert await dedup.is_held("t1", "SITE_SCAN") is True
            duplicate = await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"})
            assert duplicate.deduplicated is True

            job = await load_job(session_factory, result.durable_job_id)
            assert job.status == JobStatus.RUNNING
            assert job.error == "crawler timed out"

        assert await self.run_next(pool, backend, events) == "completed"

        assert attempts == [1, 2, 3]
        assert await dedup.is_held("t1", "SITE_SCAN") is False
        assert await job_count(session_factory) == 1
        job = await load_job(session_factory, result.durable_job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.attempts == 3
        assert job.result == {"pages": 12}

        item = await backend.get_item("seo", result.item_id)
        assert item.state == ItemState.COMPLETED
        assert item.return_value == {"pages": 12}

    async def test_exhausted_retries_fail_and_release(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        dedup: DedupController,
        session_factory,
        make_pool,
    ):
        @handlers.register(JobType.SITE_SCAN)
        async def always_fails(context: JobContext):
            raise ValueError("robots.txt disallows crawling")

        result = await registry.enqueue(
            JobType.SITE_SCAN, {"tenant_id": "t1"}, {"attempts": 2, "backoff_delay_ms": 0}
        )
        pool = make_pool("seo")

        assert await self.run_next(pool, backend, events) == "retrying"
        assert await self.run_next(pool, backend, events) == "failed"

        assert await dedup.is_held("t1", "SITE_SCAN") is False
        job = await load_job(session_factory, result.durable_job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "robots.txt disallows crawling"

    async def test_scheduled_item_gets_record_on_first_run(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        session_factory,
        make_pool,
    ):
        seen: list[UUID | None] = []

        @handlers.register(JobType.GSC_SYNC)
        async def sync(context: JobContext):
            seen.append(context.durable_job_id)
            return {"tenants": 0}

        result = await registry.schedule(JobType.GSC_SYNC, {"tenant_id": "all"})
        assert result.durable_job_id is None

        assert await self.run_next(make_pool(QueueName.GSC.value), backend, events) == "completed"

        [job_id] = seen
        assert job_id is not None
        item = await backend.get_item("gsc", result.item_id)
        assert item.data[PAYLOAD_DURABLE_JOB_ID] == str(job_id)
        job = await load_job(session_factory, job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.tenant_id is None

    async def test_fixed_backoff_between_attempts(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        clock,
        make_pool,
    ):
        @handlers.register(JobType.SITE_SCAN)
        async def always_times_out(context: JobContext):
            raise TimeoutError("crawler timed out")

        result = await registry.enqueue(
            JobType.SITE_SCAN,
            {"tenant_id": "t1"},
            {"attempts": 3, "backoff": {"type": "fixed", "delay_ms": 1_000}},
        )
        pool = make_pool("seo")

        item = await backend.get_item("seo", result.item_id)
        assert item.opts.backoff == Backoff(type=BackoffType.FIXED, delay_ms=1_000)

        # Exponential backoff would wait 2s before the third attempt
        for _ in range(2):
            assert await self.run_next(pool, backend, events) == "retrying"
            assert (await backend.get_item("seo", result.item_id)).state == ItemState.DELAYED
            assert await backend.fetch_next("seo", "early", pool.lock_ms) is None
            clock.advance(1_000)

        assert await self.run_next(pool, backend, events) == "failed"

    async def test_result_converted_to_json(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        dedup: DedupController,
        session_factory,
        make_pool,
    ):
        scanned_at = datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc)

        @handlers.register(JobType.SITE_SCAN)
        async def scan(context: JobContext):
            return {"scanned_at": scanned_at, "issues": {"missing-title"}}

        result = await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"})

        assert await self.run_next(make_pool("seo"), backend, events) == "completed"

        job = await load_job(session_factory, result.durable_job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.completed_at is not None
        assert datetime.fromisoformat(job.result["scanned_at"]) == scanned_at
        assert job.result["issues"] == ["missing-title"]
        item = await backend.get_item("seo", result.item_id)
        assert item.return_value == job.result
        assert await dedup.is_held("t1", "SITE_SCAN") is False

    async def test_unserializable_result_fails_without_retry(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        dedup: DedupController,
        session_factory,
        make_pool,
    ):
        @handlers.register(JobType.SITE_SCAN)
        async def scan(context: JobContext):
            return {"crawler": object()}

        result = await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"}, {"attempts": 3})

        assert await self.run_next(make_pool("seo"), backend, events) == "failed"

        item = await backend.get_item("seo", result.item_id)
        assert item.state == ItemState.FAILED
        assert item.attempts_made == 3
        job = await load_job(session_factory, result.durable_job_id)
        assert job.status == JobStatus.FAILED
        assert "not JSON serializable" in job.error
        assert await dedup.is_held("t1", "SITE_SCAN") is False

    async def test_start_log_carries_durable_id(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        make_pool,
        caplog,
    ):
        caplog.set_level(logging.INFO, logger="orchestrator.worker.pool")

        @handlers.register(JobType.SITE_SCAN)
        async def scan(context: JobContext):
            return None

        result = await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"})
        await self.run_next(make_pool("seo"), backend, events)

        [started] = [record for record in caplog.records if record.getMessage() == "Job started"]
        assert started.durable_job_id == str(result.durable_job_id)

    async def test_id_write_back_failure_is_logged(
        self,
        clock,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        recorder: JobStatusRecorder,
        session_factory,
        caplog,
    ):
        backend = NoWriteBackBackend(clock=clock)

        @handlers.register(JobType.GSC_SYNC)
        async def sync(context: JobContext):
            return {"tenants": 0}

        await backend.add("gsc", "GSC_SYNC", {"tenant_id": "all"}, ItemOptions())
        pool = WorkerPool("gsc", 1, backend, handlers, events, lock_ms=60_000, recorder=recorder)

        assert await self.run_next(pool, backend, events) == "completed"

        assert "Could not store durable job id on item" in [r.getMessage() for r in caplog.records]
        assert await job_count(session_factory) == 1

    @pytest.mark.parametrize("name", ["NOT_A_JOB", "SITE_SCAN"])
    async def test_unhandled_type_fails_fast(
        self,
        name: str,
        backend: MemoryQueueBackend,
        events: LifecycleEventBus,
        make_pool,
    ):
        """Unknown names and types without a handler are terminal on the first attempt."""
        item = await backend.add("seo", name, {"tenant_id": "t1"}, ItemOptions(attempts=5))

        assert await self.run_next(make_pool("seo"), backend, events) == "failed"

        failed = await backend.get_item("seo", item.id)
        assert failed.state == ItemState.FAILED
        assert failed.attempts_made == 5
        assert "Unknown job type" in failed.failed_reason

    async def test_non_retryable_error(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        dedup: DedupController,
        make_pool,
    ):
        calls = []

        @handlers.register(JobType.SITE_SCAN)
        async def rejects(context: JobContext):
            calls.append(context.attempt)
            raise NonRetryableError("domain is not verified")

        await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"})

        assert await self.run_next(make_pool("seo"), backend, events) == "failed"
        assert calls == [1]
        assert await dedup.is_held("t1", "SITE_SCAN") is False

    async def test_lost_lock_discards_result(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        dedup: DedupController,
        make_pool,
    ):
        @handlers.register(JobType.SITE_SCAN)
        async def scan(context: JobContext):
            return {"pages": 1}

        await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"})
        pool = make_pool("seo")
        item = await backend.fetch_next("seo", "owner", pool.lock_ms)

        assert await pool.process(item, "someone-else") == "lost"
        await events.drain()

        assert await dedup.is_held("t1", "SITE_SCAN") is True
        assert (await backend.get_item("seo", item.id)).state == ItemState.ACTIVE

    async def test_pool_loop_processes_items(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        make_pool,
    ):
        @handlers.register(JobType.SITE_SCAN)
        async def scan(context: JobContext):
            return {"tenant": context.tenant_id}

        for tenant in ("t1", "t2", "t3"):
            await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": tenant})

        pool = make_pool("seo")
        events.start()
        pool.start()
        for _ in range(100):
            if (await backend.counts("seo")).completed == 3:
                break
            await asyncio.sleep(0.01)
        pool.stop()
        await pool.wait()
        await events.stop()

        assert (await backend.counts("seo")).completed == 3
        assert not pool.running


class TestBuildRuntime:
    """Tests for worker process wiring."""

    def test_one_pool_per_served_queue(
        self,
        test_settings,
        session_factory,
        store,
        backend,
        metrics,
    ):
        settings = test_settings.model_copy(
            update={"worker_queues": "seo,gsc", "queue_concurrency": {"seo": 4}}
        )

        runtime = build_runtime(
            settings,
            session_factory=session_factory,
            handlers=HandlerRegistry(),
            store=store,
            backend=backend,
            metrics=metrics,
        )

        assert [(pool.queue, pool.concurrency) for pool in runtime.pools] == [("seo", 4), ("gsc", 2)]
        assert runtime.events.subscriber_names == ["recorder", "dedup"]
        assert runtime.scheduler is None
        assert runtime.closers == []

    def test_strict_coverage_rejects_missing_handlers(self, test_settings, session_factory, store, backend):
        settings = test_settings.model_copy(update={"strict_handler_coverage": True})

        with pytest.raises(ConfigurationError, match="No handler registered"):
            build_runtime(
                settings,
                session_factory=session_factory,
                handlers=HandlerRegistry(),
                store=store,
                backend=backend,
            )

    async def test_start_and_shutdown(self, test_settings, session_factory, store, backend):
        settings = test_settings.model_copy(update={"enable_scheduler": True, "scheduler_tick_seconds": 0.01})
        runtime = build_runtime(
            settings,
            session_factory=session_factory,
            handlers=HandlerRegistry(),
            store=store,
            backend=backend,
        )
        assert runtime.scheduler is not None

        runtime.start()
        await asyncio.sleep(0.03)
        coordinator = runtime.shutdown_coordinator()
        await coordinator.shutdown("test")

        assert coordinator.done
        assert not any(pool.running for pool in runtime.pools)
        assert not runtime.events.running
