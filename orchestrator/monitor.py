"""
Coordination store memory monitor.

The broker keeps settled items in the store until they are trimmed or
cleaned, so memory pressure is the first sign of a retention problem.
"""

import asyncio
import logging

from orchestrator.coordination.base import CoordinationStore, MemoryInfo
from orchestrator.errors import CoordinationStoreError
from orchestrator.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


class MemoryMonitor:
    """Samples store memory on a fixed interval and logs by severity."""

    def __init__(
        self,
        store: CoordinationStore,
        interval_seconds: float = 30 * 60,
        warn_ratio: float = 0.75,
        critical_ratio: float = 0.9,
        metrics: MetricsCollector | None = None,
    ):
        if not 0 < warn_ratio <= critical_ratio:
            raise ValueError("Expected 0 < warn_ratio <= critical_ratio")
        self.interval = interval_seconds
        self.warn_ratio = warn_ratio
        self.critical_ratio = critical_ratio
        self._store = store
        self._metrics = metrics
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    def level_for(self, info: MemoryInfo) -> int:
        ratio = info.usage_ratio
        if ratio is None or ratio < self.warn_ratio:
            return logging.INFO
        if ratio < self.critical_ratio:
            return logging.WARNING
        return logging.CRITICAL

    async def sample(self) -> MemoryInfo | None:
        """
        Read and log one memory sample.

        Returns:
            The sample, or None if the store could not be read.
        """
        try:
            info = await self._store.memory_info()
        except CoordinationStoreError:
            logger.warning("Could not read coordination store memory", exc_info=True)
            return None

        if self._metrics:
            self._metrics.update_store_memory(info.used_bytes, info.max_bytes)

        ratio = info.usage_ratio
        logger.log(
            self.level_for(info),
            "Coordination store memory",
            extra={
                "used": info.used_human,
                "max": info.max_human if info.max_bytes else "unlimited",
                "usage_ratio": round(ratio, 3) if ratio is not None else None,
            },
        )
        return info

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            await self.sample()
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._loop(), name="memory-monitor")
            logger.info("Memory monitor started", extra={"interval": self.interval})

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is not None:
            await self._task
            self._task = None
