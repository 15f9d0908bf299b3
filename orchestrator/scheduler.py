"""
Periodic job scheduler.

Every worker process may run a scheduler; slot locks in the coordination
store make sure each periodic job is enqueued once per slot across the
fleet, and singleton tasks run under a distributed lock so only one
process executes them at a time.
"""

import asyncio
import importlib
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from orchestrator.constants import ALL_TENANTS, JobType
from orchestrator.errors import ConfigurationError
from orchestrator.locks import DistributedLock
from orchestrator.queues import QueueRegistry
from orchestrator.topology import resolve_job_type

logger = logging.getLogger(__name__)

HOUR = 60 * 60
DAY = 24 * HOUR
WEEK = 7 * DAY
# Epoch day 0 was a Thursday, so weekly offsets count from Thursday 00:00 UTC
SUNDAY = 3 * DAY
MONDAY = 4 * DAY
TUESDAY = 5 * DAY
WEDNESDAY = 6 * DAY


@dataclass(frozen=True)
class PeriodicJob:
    """
    A job enqueued once per interval slot.

    Slots are aligned to the epoch plus offset_seconds, so a daily job
    with a 2 h offset fires at 02:00 UTC.
    """

    name: str
    job_type: JobType
    every_seconds: int
    payload: dict[str, Any] = field(default_factory=dict)
    options: dict[str, Any] = field(default_factory=dict)
    offset_seconds: int = 0
    run_on_start: bool = False

    def __post_init__(self) -> None:
        if self.every_seconds <= 0:
            raise ConfigurationError(f"Periodic job {self.name} needs a positive interval")
        resolve_job_type(self.job_type)

    def slot_at(self, now: float) -> int:
        return int((now - self.offset_seconds) // self.every_seconds)

    def lock_name(self, slot: int) -> str:
        return f"schedule:{self.name}:{slot}"


@dataclass
class SingletonTask:
    """A coroutine that must never run in two processes at once."""

    name: str
    fn: Callable[[], Awaitable[Any]]
    every_seconds: float
    lock_ttl_ms: int


DEFAULT_PERIODIC_JOBS: tuple[PeriodicJob, ...] = (
    PeriodicJob(
        "gsc-sync",
        JobType.GSC_SYNC,
        6 * HOUR,
        payload={"tenant_id": ALL_TENANTS, "dimensions": ["query", "page", "country", "device"]},
    ),
    PeriodicJob(
        "seo-opportunity-scan",
        JobType.SEO_OPPORTUNITY_SCAN,
        DAY,
        payload={"force_rescan": False},
        offset_seconds=2 * HOUR,
    ),
    PeriodicJob(
        "seo-health-audit",
        JobType.SEO_ANALYZE,
        DAY,
        payload={"tenant_id": ALL_TENANTS, "full_site_audit": False, "trigger_optimizations": True},
        offset_seconds=3 * HOUR,
    ),
    PeriodicJob(
        "seo-deep-audit",
        JobType.SEO_ANALYZE,
        WEEK,
        payload={
            "tenant_id": ALL_TENANTS,
            "full_site_audit": True,
            "force_audit": True,
            "trigger_optimizations": True,
        },
        offset_seconds=SUNDAY + 5 * HOUR,
    ),
    PeriodicJob(
        "seo-auto-optimize",
        JobType.SEO_AUTO_OPTIMIZE,
        WEEK,
        payload={"tenant_id": ALL_TENANTS, "scope": "all"},
        offset_seconds=SUNDAY + 6 * HOUR,
    ),
    PeriodicJob(
        "metrics-aggregate",
        JobType.METRICS_AGGREGATE,
        DAY,
        payload={"tenant_id": ALL_TENANTS, "aggregation_type": "daily"},
        offset_seconds=1 * HOUR,
    ),
    PeriodicJob(
        "performance-report",
        JobType.PERFORMANCE_REPORT,
        WEEK,
        payload={"tenant_id": ALL_TENANTS, "report_type": "weekly"},
        offset_seconds=MONDAY + 9 * HOUR,
    ),
    PeriodicJob(
        "abtest-rebalance",
        JobType.ABTEST_REBALANCE,
        HOUR,
        payload={"tenant_id": ALL_TENANTS, "algorithm": "thompson_sampling"},
    ),
    PeriodicJob(
        "backlink-monitor",
        JobType.LINK_BACKLINK_MONITOR,
        WEEK,
        payload={"tenant_id": ALL_TENANTS},
        offset_seconds=WEDNESDAY + 3 * HOUR,
    ),
    PeriodicJob(
        "link-opportunity-scan",
        JobType.LINK_OPPORTUNITY_SCAN,
        WEEK,
        payload={"tenant_id": ALL_TENANTS},
        offset_seconds=TUESDAY + 2 * HOUR,
    ),
    PeriodicJob("queue-cleanup", JobType.QUEUE_CLEANUP, HOUR, offset_seconds=30 * 60),
    PeriodicJob("queue-metrics-snapshot", JobType.QUEUE_METRICS_SNAPSHOT, 5 * 60),
)


def load_callable(path: str) -> Callable[[], Awaitable[Any]]:
    """
    Import "package.module:attribute".

    Raises:
        ConfigurationError: If the path is malformed or cannot be imported.
    """
    module_path, _, attr = path.partition(":")
    if not module_path or not attr:
        raise ConfigurationError(f"Expected 'module:callable', got {path!r}")
    try:
        module = importlib.import_module(module_path)
        fn = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load {path}: {e}") from e
    if not callable(fn):
        raise ConfigurationError(f"{path} is not callable")
    return fn


class PeriodicScheduler:
    """Fires periodic jobs and singleton tasks on a fixed tick."""

    def __init__(
        self,
        registry: QueueRegistry,
        locks: DistributedLock,
        jobs: tuple[PeriodicJob, ...] | list[PeriodicJob] = DEFAULT_PERIODIC_JOBS,
        singletons: list[SingletonTask] | None = None,
        tick_seconds: float = 15.0,
        clock: Callable[[], float] = time.time,
    ):
        names = [job.name for job in jobs]
        if len(names) != len(set(names)):
            raise ConfigurationError("Periodic job names must be unique")

        self.jobs = list(jobs)
        self.singletons = list(singletons or [])
        self.tick_seconds = tick_seconds

        self._registry = registry
        self._locks = locks
        self._clock = clock
        self._last_slot: dict[str, int] = {}
        self._singleton_due: dict[str, float] = {}
        self._singleton_tasks: dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def fire(self, job: PeriodicJob, slot: int) -> bool:
        """
        Enqueue one slot of a periodic job, unless another process did.

        Returns:
            True if this process enqueued it.
        """
        release = await self._locks.acquire(job.lock_name(slot), job.every_seconds * 1000)
        if release is None:
            logger.debug("Periodic job already fired", extra={"schedule": job.name, "slot": slot})
            return False
        # The slot lock is left to expire so no process fires this slot again
        result = await self._registry.schedule(job.job_type, job.payload, job.options)
        logger.info(
            "Periodic job enqueued",
            extra={
                "schedule": job.name,
                "job_type": job.job_type.value,
                "slot": slot,
                "item_id": result.item_id,
                "deduplicated": result.deduplicated,
            },
        )
        return True

    async def _run_singleton(self, task: SingletonTask) -> None:
        try:
            ran, _ = await self._locks.run_exclusive(task.name, task.lock_ttl_ms, task.fn)
        except Exception:
            logger.exception("Singleton task failed", extra={"task": task.name})
            return
        if ran:
            logger.info("Singleton task finished", extra={"task": task.name})
        else:
            logger.debug("Singleton task skipped, lock held elsewhere", extra={"task": task.name})

    async def tick(self, now: float | None = None) -> list[str]:
        """
        Fire whatever is due.

        Returns:
            Names of the periodic jobs this process enqueued.
        """
        now = self._clock() if now is None else now
        fired = []
        for job in self.jobs:
            slot = job.slot_at(now)
            last = self._last_slot.get(job.name)
            if last is None and not job.run_on_start:
                # First sighting: wait for the next boundary, like cron
                self._last_slot[job.name] = slot
                continue
            if last is not None and slot <= last:
                continue
            self._last_slot[job.name] = slot
            try:
                if await self.fire(job, slot):
                    fired.append(job.name)
            except Exception:
                logger.exception("Failed to enqueue periodic job", extra={"schedule": job.name})

        for task in self.singletons:
            running = self._singleton_tasks.get(task.name)
            if running is not None and not running.done():
                continue
            if now < self._singleton_due.get(task.name, 0):
                continue
            self._singleton_due[task.name] = now + task.every_seconds
            self._singleton_tasks[task.name] = asyncio.create_task(
                self._run_singleton(task), name=f"singleton-{task.name}"
            )
        return fired

    async def _loop(self) -> None:
        logger.info(
            "Scheduler started",
            extra={
                "periodic_jobs": [job.name for job in self.jobs],
                "singletons": [task.name for task in self.singletons],
            },
        )
        while not self._stopping.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Error in scheduler tick")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop(), name="scheduler")

    async def stop(self) -> None:
        """Stop ticking and wait for running singleton tasks."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
        running = [task for task in self._singleton_tasks.values() if not task.done()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        logger.info("Scheduler stopped")
