"""
Graceful shutdown for worker processes.

On SIGTERM / SIGINT the process stops pulling work, lets in-flight
handlers finish so the broker sees every accepted item settled, drains
lifecycle events to their subscribers, and only then closes its
connections.
"""

import asyncio
import logging
import signal
from typing import Any, Awaitable, Callable, Iterable, Protocol

from orchestrator.events import LifecycleEventBus
from orchestrator.worker.pool import WorkerPool

logger = logging.getLogger(__name__)

Closer = Callable[[], Awaitable[Any]]


class Stoppable(Protocol):
    async def stop(self) -> None: ...


class ShutdownCoordinator:
    """
    Runs the shutdown sequence exactly once.

    Order:
    1. Stop background loops (scheduler, monitor, reaper)
    2. Stop pulling on every pool
    3. Wait for in-flight handlers
    4. Drain and stop the lifecycle event bus
    5. Close connections (store, database), in the order given
    """

    def __init__(
        self,
        pools: Iterable[WorkerPool],
        events: LifecycleEventBus | None = None,
        background: Iterable[Stoppable] = (),
        closers: Iterable[Closer] = (),
    ):
        self._pools = list(pools)
        self._events = events
        self._background = list(background)
        self._closers = list(closers)
        self._started = False
        self._done = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.reason: str | None = None

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Register SIGTERM and SIGINT handlers on the loop."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.trigger, sig.name)

    def trigger(self, reason: str) -> None:
        """Start shutdown from a non-async context (signal handler)."""
        if self._started or self._task is not None:
            logger.info("Shutdown already in progress", extra={"reason": reason})
            return
        self._task = asyncio.get_running_loop().create_task(self.shutdown(reason), name="shutdown")

    async def shutdown(self, reason: str = "requested") -> None:
        if self._started:
            await self._done.wait()
            return
        self._started = True
        self.reason = reason
        logger.info("Shutting down", extra={"reason": reason})

        for component in self._background:
            try:
                await component.stop()
            except Exception:
                logger.exception(
                    "Error stopping background component",
                    extra={"component": type(component).__name__},
                )

        for pool in self._pools:
            pool.stop()
        in_flight = sum(pool.in_flight for pool in self._pools)
        if in_flight:
            logger.info("Waiting for in-flight jobs", extra={"in_flight": in_flight})
        await asyncio.gather(*(pool.wait() for pool in self._pools))

        if self._events is not None:
            await self._events.stop()

        for closer in self._closers:
            try:
                await closer()
            except Exception:
                logger.exception(
                    "Error closing resource",
                    extra={"closer": getattr(closer, "__qualname__", repr(closer))},
                )

        logger.info("Shutdown complete", extra={"reason": reason})
        self._done.set()

    async def wait(self) -> None:
        """Block until shutdown has finished."""
        await self._done.wait()
