"""
In-process lifecycle event channel.

Worker pools publish JobEvents; subscribers (the status recorder and the
dedup controller) are called in subscription order by a single consumer
task, so events for one item are always seen in the order they were
published.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from orchestrator.types.events import JobEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[JobEvent], Awaitable[None]]


class LifecycleEventBus:
    """
    Fan-out channel for job lifecycle events.

    A subscriber that raises is logged and skipped; it never blocks the
    other subscribers or the publisher.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[JobEvent] = asyncio.Queue()
        self._subscribers: list[tuple[str, EventHandler]] = []
        self._consumer: asyncio.Task[None] | None = None

    def subscribe(self, handler: EventHandler, name: str | None = None) -> None:
        self._subscribers.append((name or getattr(handler, "__qualname__", repr(handler)), handler))

    @property
    def subscriber_names(self) -> list[str]:
        return [name for name, _ in self._subscribers]

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def publish(self, event: JobEvent) -> None:
        """Queue an event for delivery. Never blocks."""
        self._queue.put_nowait(event)

    async def dispatch(self, event: JobEvent) -> None:
        """Deliver one event to every subscriber."""
        for name, handler in self._subscribers:
            try:
                await handler(event)
            except Exception:
                logger.exception(
                    "Lifecycle subscriber failed",
                    extra={
                        "subscriber": name,
                        "event_kind": event.kind.value,
                        "queue": event.queue,
                        "item_id": event.item_id,
                    },
                )

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self.dispatch(event)
            finally:
                self._queue.task_done()

    def start(self) -> None:
        if self.running:
            return
        self._consumer = asyncio.create_task(self._consume(), name="lifecycle-events")
        logger.info("Lifecycle event bus started", extra={"subscribers": self.subscriber_names})

    async def drain(self) -> None:
        """Wait until every published event has been delivered."""
        if not self.running:
            # Nobody is consuming; deliver inline
            while not self._queue.empty():
                event = self._queue.get_nowait()
                try:
                    await self.dispatch(event)
                finally:
                    self._queue.task_done()
            return
        await self._queue.join()

    async def stop(self) -> None:
        """Drain outstanding events, then stop the consumer."""
        await self.drain()
        if self._consumer is not None:
            self._consumer.cancel()
            try:
                await self._consumer
            except asyncio.CancelledError:
                pass
            self._consumer = None
        logger.info("Lifecycle event bus stopped")
