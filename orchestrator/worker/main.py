"""
Worker process for executing jobs.

One process serves a set of queues with one worker pool each. All pools
share a single coordination store connection, broker backend, event bus
and database engine, built once here and passed down.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from orchestrator.broker import QueueBackend, RedisQueueBackend
from orchestrator.config import Settings, get_settings
from orchestrator.constants import QueueName
from orchestrator.coordination import (
    CoordinationStore,
    RedisCoordinationStore,
    create_redis_connection,
)
from orchestrator.db import close_db, init_db
from orchestrator.dedup import DedupController
from orchestrator.events import LifecycleEventBus
from orchestrator.locks import DistributedLock
from orchestrator.monitor import MemoryMonitor
from orchestrator.observability.logging import setup_logging
from orchestrator.observability.metrics import MetricsCollector, get_metrics
from orchestrator.observability.tracing import setup_tracing
from orchestrator.queues import QueueRegistry
from orchestrator.reaper.main import Reaper
from orchestrator.recorder import JobStatusRecorder
from orchestrator.scheduler import PeriodicScheduler, SingletonTask, load_callable
from orchestrator.topology import QUEUE_CONFIG, resolve_queue, validate_topology
from orchestrator.worker.handlers import HandlerRegistry, get_registry, load_handler_modules
from orchestrator.worker.pool import WorkerPool
from orchestrator.worker.shutdown import ShutdownCoordinator

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a worker process runs, wired together."""

    settings: Settings
    store: CoordinationStore
    backend: QueueBackend
    events: LifecycleEventBus
    recorder: JobStatusRecorder
    dedup: DedupController
    locks: DistributedLock
    registry: QueueRegistry
    handlers: HandlerRegistry
    pools: list[WorkerPool]
    reaper: Reaper
    monitor: MemoryMonitor
    scheduler: PeriodicScheduler | None = None
    metrics: MetricsCollector | None = None
    closers: list[Any] = field(default_factory=list)

    @property
    def background(self) -> list[Any]:
        components: list[Any] = [self.reaper, self.monitor]
        if self.scheduler is not None:
            components.insert(0, self.scheduler)
        return components

    def start(self) -> None:
        self.events.start()
        for pool in self.pools:
            pool.start()
        self.reaper.start()
        self.monitor.start()
        if self.scheduler is not None:
            self.scheduler.start()

    def shutdown_coordinator(self) -> ShutdownCoordinator:
        return ShutdownCoordinator(
            pools=self.pools,
            events=self.events,
            background=self.background,
            closers=self.closers,
        )


def served_queues(settings: Settings) -> list[QueueName]:
    """Queues named in settings, or every queue when none are."""
    names = settings.served_queue_names
    if not names:
        return list(QueueName)
    return [resolve_queue(name) for name in names]


def build_runtime(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    handlers: HandlerRegistry | None = None,
    store: CoordinationStore | None = None,
    backend: QueueBackend | None = None,
    metrics: MetricsCollector | None = None,
) -> Runtime:
    """
    Wire a worker process.

    The store and backend may be injected (tests use in-memory ones);
    otherwise they are built from settings and closed at shutdown.

    Raises:
        ConfigurationError: If the topology is inconsistent or a served
            queue has job types without a handler.
    """
    settings = settings or get_settings()
    validate_topology()

    closers: list[Any] = []
    if store is None:
        store = RedisCoordinationStore(create_redis_connection(settings))
        closers.append(store.close)
    if backend is None:
        if not isinstance(store, RedisCoordinationStore):
            raise ValueError("A Redis queue backend needs a Redis coordination store")
        backend = RedisQueueBackend(store.client, prefix=settings.redis_key_prefix)
        closers.insert(0, backend.close)

    if handlers is None:
        load_handler_modules(settings.handler_module_paths)
        handlers = get_registry()

    queues = served_queues(settings)
    if settings.strict_handler_coverage:
        handlers.validate(queues)
    else:
        missing = handlers.missing_for(queues)
        if missing:
            logger.warning("Job types without a handler", extra={"job_types": missing})

    events = LifecycleEventBus()
    recorder = JobStatusRecorder(session_factory)
    dedup = DedupController(store, ttl_seconds=settings.dedup_ttl_seconds)
    locks = DistributedLock(store, metrics=metrics)
    registry = QueueRegistry(
        backend,
        dedup,
        recorder=recorder,
        store=store,
        metrics=metrics,
        settings=settings,
    )

    # Recorder first: the durable record settles before the dedup key frees
    events.subscribe(recorder.on_event, name="recorder")
    events.subscribe(dedup.on_event, name="dedup")

    pools = [
        WorkerPool(
            queue=queue.value,
            concurrency=settings.concurrency_for(queue.value),
            backend=backend,
            handlers=handlers,
            events=events,
            lock_ms=QUEUE_CONFIG[queue].lock_ms(settings.lock_grace_ms),
            recorder=recorder,
            registry=registry,
            metrics=metrics,
            poll_interval=settings.worker_poll_interval_seconds,
        )
        for queue in queues
    ]

    reaper = Reaper(
        backend,
        queues=[queue.value for queue in queues],
        interval_seconds=settings.stalled_check_interval_seconds,
        registry=registry,
        clean_interval_seconds=settings.clean_interval_seconds,
        metrics=metrics,
    )
    monitor = MemoryMonitor(
        store,
        interval_seconds=settings.memory_monitor_interval_seconds,
        warn_ratio=settings.memory_warn_ratio,
        critical_ratio=settings.memory_critical_ratio,
        metrics=metrics,
    )

    scheduler = None
    if settings.enable_scheduler:
        singletons = []
        if settings.roadmap_scan_path:
            singletons.append(
                SingletonTask(
                    name="roadmap-scan",
                    fn=load_callable(settings.roadmap_scan_path),
                    every_seconds=settings.roadmap_interval_seconds,
                    lock_ttl_ms=settings.roadmap_lock_ttl_ms,
                )
            )
        scheduler = PeriodicScheduler(
            registry,
            locks,
            singletons=singletons,
            tick_seconds=settings.scheduler_tick_seconds,
        )

    return Runtime(
        settings=settings,
        store=store,
        backend=backend,
        events=events,
        recorder=recorder,
        dedup=dedup,
        locks=locks,
        registry=registry,
        handlers=handlers,
        pools=pools,
        reaper=reaper,
        monitor=monitor,
        scheduler=scheduler,
        metrics=metrics,
        closers=closers,
    )


async def run_async() -> None:
    """Run the worker asynchronously."""
    setup_logging("worker")
    setup_tracing()
    settings = get_settings()
    session_factory = await init_db()

    runtime = build_runtime(settings, session_factory=session_factory, metrics=get_metrics())
    runtime.closers.append(close_db)

    coordinator = runtime.shutdown_coordinator()
    coordinator.install()

    logger.info(
        "Worker starting",
        extra={
            "queues": [pool.queue for pool in runtime.pools],
            "concurrency": {pool.queue: pool.concurrency for pool in runtime.pools},
            "scheduler": runtime.scheduler is not None,
        },
    )
    runtime.start()
    await coordinator.wait()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
