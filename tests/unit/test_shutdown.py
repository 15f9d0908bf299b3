"""
Unit tests for the graceful shutdown sequence.
"""

import asyncio

from orchestrator.broker import MemoryQueueBackend
from orchestrator.constants import JobType
from orchestrator.dedup import DedupController
from orchestrator.events import LifecycleEventBus
from orchestrator.queues import QueueRegistry
from orchestrator.worker.handlers import HandlerRegistry
from orchestrator.worker.pool import WorkerPool
from orchestrator.worker.shutdown import ShutdownCoordinator


class Component:
    """Background component that records when it was stopped."""

    def __init__(self, steps: list[str], name: str, fail: bool = False):
        self.steps = steps
        self.name = name
        self.fail = fail

    async def stop(self) -> None:
        self.steps.append(self.name)
        if self.fail:
            raise RuntimeError(f"{self.name} would not stop")


class TestShutdownCoordinator:
    """Tests for ShutdownCoordinator."""

    async def test_in_flight_job_finishes_before_events_stop(
        self,
        registry: QueueRegistry,
        backend: MemoryQueueBackend,
        dedup: DedupController,
        events: LifecycleEventBus,
    ):
        started = asyncio.Event()
        release = asyncio.Event()
        steps: list[str] = []

        handlers = HandlerRegistry()

        @handlers.register(JobType.SITE_SCAN)
        async def slow_scan(context):
            started.set()
            await release.wait()
            steps.append("handler finished")
            return {"pages": 1}

        pool = WorkerPool("seo", 1, backend, handlers, events, lock_ms=60_000, poll_interval=0.01)
        await registry.enqueue(JobType.SITE_SCAN, {"tenant_id": "t1"})

        async def close_store():
            steps.append("store closed")

        coordinator = ShutdownCoordinator(
            [pool],
            events=events,
            background=[Component(steps, "scheduler stopped")],
            closers=[close_store],
        )
        events.start()
        pool.start()
        await asyncio.wait_for(started.wait(), timeout=1)

        shutdown = asyncio.create_task(coordinator.shutdown("SIGTERM"))
        await asyncio.sleep(0.02)
        assert not coordinator.done
        release.set()
        await asyncio.wait_for(shutdown, timeout=1)

        assert steps == ["scheduler stopped", "handler finished", "store closed"]
        assert coordinator.reason == "SIGTERM"
        assert (await backend.counts("seo")).completed == 1
        assert await dedup.is_held("t1", "SITE_SCAN") is False
        assert not events.running
        assert not pool.running

    async def test_runs_once(self):
        steps: list[str] = []
        coordinator = ShutdownCoordinator([], background=[Component(steps, "monitor")])

        await asyncio.gather(coordinator.shutdown("SIGTERM"), coordinator.shutdown("SIGINT"))
        await coordinator.shutdown("again")

        assert steps == ["monitor"]
        assert coordinator.reason == "SIGTERM"

    async def test_errors_do_not_abort_the_sequence(self, caplog):
        steps: list[str] = []

        async def broken_close():
            steps.append("broken")
            raise ConnectionError("already closed")

        async def close_db():
            steps.append("db closed")

        coordinator = ShutdownCoordinator(
            [],
            background=[Component(steps, "reaper", fail=True), Component(steps, "monitor")],
            closers=[broken_close, close_db],
        )

        await coordinator.shutdown()

        assert steps == ["reaper", "monitor", "broken", "db closed"]
        assert coordinator.done
        messages = [record.getMessage() for record in caplog.records]
        assert "Error stopping background component" in messages
        assert "Error closing resource" in messages

    async def test_trigger_schedules_shutdown(self):
        steps: list[str] = []
        coordinator = ShutdownCoordinator([], background=[Component(steps, "monitor")])

        coordinator.trigger("SIGINT")
        task = coordinator._task
        # A second signal before the first task runs schedules nothing new
        coordinator.trigger("SIGTERM")

        assert coordinator._task is task
        await asyncio.wait_for(coordinator.wait(), timeout=1)
        assert task.done()
        assert coordinator.reason == "SIGINT"
        assert steps == ["monitor"]
