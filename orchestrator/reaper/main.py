"""
Stalled item reaper.

The reaper runs periodically to find active items whose broker lock
expired (their worker crashed or lost its connection) and returns them
to waiting. This ensures at-least-once delivery. On a slower cadence it
also sweeps old completed and failed items.
"""

import asyncio
import logging
import signal
from typing import TYPE_CHECKING, Iterable

from orchestrator.broker import RedisQueueBackend
from orchestrator.broker.base import QueueBackend
from orchestrator.config import get_settings
from orchestrator.constants import QueueName
from orchestrator.coordination import RedisCoordinationStore, create_redis_connection
from orchestrator.observability.logging import setup_logging
from orchestrator.observability.metrics import MetricsCollector, get_metrics

if TYPE_CHECKING:
    from orchestrator.queues import QueueRegistry

logger = logging.getLogger(__name__)


class Reaper:
    """
    Recovers stalled items across a set of queues.

    Runs periodically to:
    1. Find active items whose lock expired
    2. Return them to waiting for redelivery
    3. Every clean_every runs, clean settled items past their grace period
    """

    def __init__(
        self,
        backend: QueueBackend,
        queues: Iterable[str] | None = None,
        interval_seconds: float | None = None,
        registry: "QueueRegistry | None" = None,
        clean_interval_seconds: float | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the reaper.

        Args:
            backend: Broker backend to recover items in.
            queues: Queue names to check. Defaults to every queue.
            interval_seconds: Seconds between stalled checks.
            registry: Queue registry used for cleaning; no cleaning without it.
            clean_interval_seconds: Seconds between clean runs.
            metrics: Metrics collector.
        """
        settings = get_settings()
        self.queues = list(queues) if queues else [queue.value for queue in QueueName]
        self.interval = interval_seconds or settings.stalled_check_interval_seconds
        clean_interval = clean_interval_seconds or settings.clean_interval_seconds
        self.clean_every = max(1, round(clean_interval / self.interval))

        self._backend = backend
        self._registry = registry
        self._metrics = metrics
        self._runs = 0
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    async def recover_stalled(self) -> dict[str, int]:
        """
        Return stalled items to waiting on every queue.

        Returns:
            Recovered item count per queue, for queues with any.
        """
        recovered: dict[str, int] = {}
        for queue in self.queues:
            item_ids = await self._backend.recover_stalled(queue)
            if not item_ids:
                continue
            recovered[queue] = len(item_ids)
            if self._metrics:
                self._metrics.record_stalled_recovered(queue, len(item_ids))
            logger.warning(
                "Recovered stalled items",
                extra={"queue": queue, "count": len(item_ids), "item_ids": item_ids[:20]},
            )
        return recovered

    async def run_once(self) -> dict[str, int]:
        """
        Run the reaper once (for testing or cron-style execution).

        Returns:
            Recovered item count per queue.
        """
        self._runs += 1
        recovered = await self.recover_stalled()
        if self._registry is not None and self._runs % self.clean_every == 0:
            await self._registry.clean_all_queues()
        return recovered

    async def _loop(self) -> None:
        logger.info(
            "Reaper starting",
            extra={"interval": self.interval, "queues": self.queues},
        )
        while not self._stopping.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("Error in reaper loop")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        logger.info("Reaper stopped")

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop(), name="reaper")

    async def stop(self) -> None:
        """Stop the reaper."""
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.shield(self._task)


async def run_async() -> None:
    """Run the reaper as its own process."""
    setup_logging("reaper")
    settings = get_settings()
    store = RedisCoordinationStore(create_redis_connection(settings))
    backend = RedisQueueBackend(store.client, prefix=settings.redis_key_prefix)
    reaper = Reaper(backend, metrics=get_metrics())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda: asyncio.create_task(reaper.stop()))

    try:
        reaper.start()
        await reaper.wait()
    finally:
        await backend.close()
        await store.close()


def run() -> None:
    """Run the reaper."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
