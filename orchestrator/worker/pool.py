"""
Bounded-concurrency worker pool for one queue.

Each pool runs `concurrency` independent pull loops on the event loop.
A loop fetches one item under a fresh lock token, runs its handler and
settles it with the broker before pulling the next, so at most
`concurrency` handlers of a queue run at once in this process.
"""

import asyncio
import logging
import time
import uuid
from typing import Any

from pydantic_core import PydanticSerializationError, to_jsonable_python

from orchestrator.broker.base import QueueBackend, QueueItem
from orchestrator.constants import PAYLOAD_DURABLE_JOB_ID, SPAN_EXECUTE_JOB, JobStatus
from orchestrator.errors import ConfigurationError, NonRetryableError, PayloadValidationError
from orchestrator.events import LifecycleEventBus
from orchestrator.observability.logging import job_log_context
from orchestrator.observability.metrics import MetricsCollector
from orchestrator.observability.tracing import job_span
from orchestrator.recorder import JobStatusRecorder
from orchestrator.types.events import JobEvent
from orchestrator.types.job import JobContext
from orchestrator.worker.handlers import HandlerRegistry

logger = logging.getLogger(__name__)

# Errors that no amount of retrying can fix
UNRECOVERABLE_ERRORS = (NonRetryableError, ConfigurationError, PayloadValidationError)


def serialize_result(result: Any) -> Any:
    """
    Convert a handler result to plain JSON data.

    Models, datetimes, UUIDs, decimals and sets are converted the way
    pydantic dumps them in JSON mode.

    Raises:
        NonRetryableError: If the result has no JSON form.
    """
    try:
        return to_jsonable_python(result)
    except PydanticSerializationError as e:
        raise NonRetryableError(f"Handler result is not JSON serializable: {e}") from e


def error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class WorkerPool:
    """
    Pulls and executes items of one queue.

    Features:
    - Fixed number of pull loops (the pool's concurrency)
    - Heartbeat extending broker locks of in-flight items
    - Retry decision and backoff per item options
    - Lifecycle events for every attempt the broker accepted
    """

    def __init__(
        self,
        queue: str,
        concurrency: int,
        backend: QueueBackend,
        handlers: HandlerRegistry,
        events: LifecycleEventBus,
        lock_ms: int,
        recorder: JobStatusRecorder | None = None,
        registry: Any = None,
        metrics: MetricsCollector | None = None,
        poll_interval: float = 1.0,
    ):
        """
        Initialize the pool.

        Args:
            queue: Queue name to pull from.
            concurrency: Number of items processed at once.
            backend: Broker backend.
            handlers: Handler registry used for dispatch.
            events: Channel receiving lifecycle events.
            lock_ms: Broker lock duration per item.
            recorder: Durable status recorder for RUNNING transitions.
            registry: QueueRegistry handed to handlers for fan-out.
            metrics: Metrics collector.
            poll_interval: Seconds to wait when the queue is empty.
        """
        if concurrency < 1:
            raise ConfigurationError(f"Concurrency for {queue} must be at least 1")

        self.queue = queue
        self.concurrency = concurrency
        self.lock_ms = lock_ms
        self.poll_interval = poll_interval

        self._backend = backend
        self._handlers = handlers
        self._events = events
        self._recorder = recorder
        self._registry = registry
        self._metrics = metrics

        self._stopping = asyncio.Event()
        self._loops: list[asyncio.Task] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._in_flight: dict[str, str] = {}  # item id -> lock token

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._loops)

    def start(self) -> None:
        """Start the pull loops and the lock heartbeat."""
        if self._loops:
            return
        self._stopping.clear()
        self._loops = [
            asyncio.create_task(self._pull_loop(slot), name=f"pool-{self.queue}-{slot}")
            for slot in range(self.concurrency)
        ]
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(), name=f"pool-{self.queue}-heartbeat"
        )
        logger.info(
            "Worker pool started",
            extra={"queue": self.queue, "concurrency": self.concurrency, "lock_ms": self.lock_ms},
        )

    def stop(self) -> None:
        """Stop pulling new items. In-flight items run to completion."""
        if not self._stopping.is_set():
            logger.info(
                "Worker pool stopping",
                extra={"queue": self.queue, "in_flight": self.in_flight},
            )
        self._stopping.set()

    async def wait(self) -> None:
        """Wait for the pull loops to exit after stop()."""
        if self._loops:
            await asyncio.gather(*self._loops, return_exceptions=True)
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None
        self._loops = []
        logger.info("Worker pool stopped", extra={"queue": self.queue})

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early on stop()."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _pull_loop(self, slot: int) -> None:
        while not self._stopping.is_set():
            token = uuid.uuid4().hex
            try:
                item = await self._backend.fetch_next(self.queue, token, self.lock_ms)
            except Exception:
                logger.exception("Error fetching next item", extra={"queue": self.queue, "slot": slot})
                await self._sleep(self.poll_interval)
                continue

            if item is None:
                await self._sleep(self.poll_interval)
                continue

            self._in_flight[item.id] = token
            try:
                with job_log_context(self.queue, item.id, item.name, item.tenant_id):
                    await self.process(item, token)
            except Exception:
                # Settlement itself failed; the stalled check will redeliver
                logger.exception(
                    "Error settling item",
                    extra={"queue": self.queue, "item_id": item.id},
                )
            finally:
                self._in_flight.pop(item.id, None)

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend locks on in-flight items.

        Keeps long handlers from being reclaimed as stalled while this
        process is alive.
        """
        interval = max(self.lock_ms / 2000, 0.05)
        while True:
            await asyncio.sleep(interval)
            for item_id, token in list(self._in_flight.items()):
                try:
                    extended = await self._backend.extend_lock(self.queue, item_id, token, self.lock_ms)
                except Exception:
                    logger.exception(
                        "Error extending lock",
                        extra={"queue": self.queue, "item_id": item_id},
                    )
                    continue
                if not extended:
                    logger.warning(
                        "Lock lost for in-flight item",
                        extra={"queue": self.queue, "item_id": item_id},
                    )

    async def process(self, item: QueueItem, token: str) -> str:
        """
        Run one fetched item and settle it with the broker.

        Handles the full lifecycle:
        1. Record RUNNING (creating the durable record if needed)
        2. Resolve and execute the handler
        3. Complete, or fail with a retry decision
        4. Publish the lifecycle event

        Returns:
            The outcome: completed, retrying, failed or lost.
        """
        start_time = time.monotonic()
        log_extra = {
            "queue": self.queue,
            "item_id": item.id,
            "job_type": item.name,
            "tenant_id": item.tenant_id,
            "attempt": item.attempts_made + 1,
            "max_attempts": item.max_attempts,
        }

        durable_job_id = item.durable_job_id
        if self._recorder is not None:
            recorded_id = await self._recorder.record_transition(
                item, JobStatus.RUNNING, durable_job_id=durable_job_id
            )
            if recorded_id is not None and recorded_id != durable_job_id:
                durable_job_id = recorded_id
                data = {**item.data, PAYLOAD_DURABLE_JOB_ID: str(recorded_id)}
                await self._write_back_id(item, data, log_extra)
                item = item.with_data(data)
        if durable_job_id is not None:
            log_extra["durable_job_id"] = str(durable_job_id)
        logger.info("Job started", extra=log_extra)

        context = JobContext(item=item, durable_job_id=durable_job_id, registry=self._registry)

        try:
            handler = self._handlers.resolve(item.name, self.queue)
            with job_span(
                SPAN_EXECUTE_JOB,
                self.queue,
                item.name,
                item_id=item.id,
                attempt=context.attempt,
                tenant_id=item.tenant_id,
            ):
                result = serialize_result(await handler(context))
        except Exception as e:
            return await self._settle_failure(item, token, e, durable_job_id, start_time, log_extra)

        duration = time.monotonic() - start_time
        if not await self._backend.complete(item, token, result):
            logger.warning("Lock lost before completion, result discarded", extra=log_extra)
            return "lost"

        self._events.publish(
            JobEvent.completed(
                queue=self.queue,
                item_id=item.id,
                job_type=item.name,
                attempts_made=item.attempts_made + 1,
                max_attempts=item.max_attempts,
                durable_job_id=durable_job_id,
                tenant_id=item.tenant_id,
                result=result,
            )
        )
        if self._metrics:
            self._metrics.record_job_completed(self.queue, item.name, "completed", duration)
        logger.info("Job completed", extra={**log_extra, "duration": f"{duration:.2f}s"})
        return "completed"

    async def _write_back_id(
        self, item: QueueItem, data: dict[str, Any], log_extra: dict[str, Any]
    ) -> None:
        """Store a newly created durable id on the broker item so redeliveries reuse it."""
        try:
            updated = await self._backend.update_data(self.queue, item.id, data)
        except Exception:
            logger.warning("Could not store durable job id on item", exc_info=True, extra=log_extra)
            return
        if not updated:
            logger.warning("Could not store durable job id on item", extra=log_extra)

    async def _settle_failure(
        self,
        item: QueueItem,
        token: str,
        error: Exception,
        durable_job_id: Any,
        start_time: float,
        log_extra: dict[str, Any],
    ) -> str:
        message = error_message(error)
        if isinstance(error, UNRECOVERABLE_ERRORS):
            # Exhaust the item so every consumer sees a terminal failure
            attempts_made = max(item.max_attempts, item.attempts_made + 1)
        else:
            attempts_made = item.attempts_made + 1

        will_retry = attempts_made < item.max_attempts
        retry_delay_ms = item.opts.backoff.delay_for(attempts_made) if will_retry else None

        if not await self._backend.fail(
            item, token, message, attempts_made=attempts_made, retry_delay_ms=retry_delay_ms
        ):
            logger.warning("Lock lost before failure was recorded", extra=log_extra)
            return "lost"

        self._events.publish(
            JobEvent.failed(
                queue=self.queue,
                item_id=item.id,
                job_type=item.name,
                attempts_made=attempts_made,
                max_attempts=item.max_attempts,
                error=message,
                durable_job_id=durable_job_id,
                tenant_id=item.tenant_id,
            )
        )

        duration = time.monotonic() - start_time
        outcome = "retrying" if will_retry else "failed"
        if self._metrics:
            self._metrics.record_job_completed(self.queue, item.name, outcome, duration)

        if will_retry:
            logger.warning(
                "Job attempt failed, will retry",
                extra={**log_extra, "error": message, "retry_delay_ms": retry_delay_ms},
            )
        else:
            logger.error(
                "Job failed permanently",
                exc_info=error,
                extra={**log_extra, "error": message, "attempts_made": attempts_made},
            )
        return outcome
