"""
Queue registry: the producer and operator entry point to every queue.
"""

import logging
from typing import Any, Mapping

from orchestrator.broker.base import (
    Backoff,
    BackoffType,
    ItemOptions,
    ItemState,
    QueueBackend,
    QueueCounts,
    QueueItem,
)
from orchestrator.config import Settings, get_settings
from orchestrator.constants import (
    PAYLOAD_DURABLE_JOB_ID,
    PAYLOAD_TENANT_ID,
    RECENT_ITEMS_DEFAULT,
    RECENT_ITEMS_MAX,
    REMOVED_BY_OPERATOR,
    SPAN_ENQUEUE_JOB,
    JobStatus,
    JobType,
    QueueName,
)
from orchestrator.coordination.base import CoordinationStore
from orchestrator.dedup import DedupController
from orchestrator.errors import ConfigurationError, CoordinationStoreError
from orchestrator.observability.metrics import MetricsCollector
from orchestrator.observability.tracing import job_span
from orchestrator.recorder import JobStatusRecorder
from orchestrator.topology import (
    QUEUE_CONFIG,
    resolve_job_type,
    resolve_queue,
    spec_for,
    validate_payload,
)
from orchestrator.types.job import EnqueueResult

logger = logging.getLogger(__name__)


class QueueRegistry:
    """
    Named queues over one injected broker backend.

    Owns the enqueue path (routing, payload validation, dedup claim,
    durable record, broker write) and the operator inspect/control
    operations.
    """

    def __init__(
        self,
        backend: QueueBackend,
        dedup: DedupController,
        recorder: JobStatusRecorder | None = None,
        store: CoordinationStore | None = None,
        metrics: MetricsCollector | None = None,
        settings: Settings | None = None,
    ):
        self._backend = backend
        self._dedup = dedup
        self._recorder = recorder
        self._store = store
        self._metrics = metrics
        self._settings = settings or get_settings()

    @property
    def backend(self) -> QueueBackend:
        return self._backend

    @property
    def dedup(self) -> DedupController:
        return self._dedup

    @property
    def queue_names(self) -> list[QueueName]:
        return list(QueueName)

    def options_for(
        self,
        queue: QueueName,
        overrides: Mapping[str, Any] | None = None,
    ) -> ItemOptions:
        """Queue policy with per-call overrides applied."""
        config = QUEUE_CONFIG[queue]
        overrides = {k: v for k, v in (overrides or {}).items() if v is not None}
        backoff_delay = int(overrides.get("backoff_delay_ms", config.backoff_delay_ms))
        backoff = overrides.get("backoff")
        if not isinstance(backoff, Backoff):
            # Unset fields of a backoff mapping fall back to the queue policy
            given = {k: v for k, v in dict(backoff or {}).items() if v is not None}
            backoff = Backoff.from_dict(
                {"type": BackoffType.EXPONENTIAL, "delay_ms": backoff_delay, **given}
            )
        return ItemOptions(
            attempts=int(overrides.get("attempts", config.attempts)),
            backoff=backoff,
            delay_ms=int(overrides.get("delay_ms", 0)),
            priority=int(overrides.get("priority", 0)),
            remove_on_complete=self._settings.completed_retention_count,
            remove_on_fail=self._settings.failed_retention_count,
        )

    async def enqueue(
        self,
        job_type: JobType | str,
        payload: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
        *,
        create_record: bool = True,
    ) -> EnqueueResult:
        """
        Submit a job to the queue that owns its type.

        Args:
            job_type: Job type; routing is looked up in the topology.
            payload: Handler input. tenant_id drives dedup.
            options: Overrides of attempts, delay_ms, priority, backoff_delay_ms,
                and backoff ({"type": "fixed" | "exponential", "delay_ms": ...}).
            create_record: Write a PENDING durable record now. Repeatable
                and scheduled jobs skip this; the worker creates their
                record on first run.

        Raises:
            ConfigurationError: If the job type has no queue mapping.
            PayloadValidationError: If a tenant-scoped job has no tenant.
        """
        resolved = resolve_job_type(job_type)
        spec = spec_for(resolved)
        queue = spec.queue
        data = dict(payload or {})
        validate_payload(resolved, data)
        opts = self.options_for(queue, options)
        tenant_id = data.get(PAYLOAD_TENANT_ID)

        with job_span(SPAN_ENQUEUE_JOB, queue.value, resolved.value, tenant_id=tenant_id) as span:
            dedup_key = None
            if spec.dedup and self._dedup.applies_to(tenant_id):
                dedup_key = self._dedup.key_for(tenant_id, resolved.value)
                if not await self._dedup.claim(tenant_id, resolved.value):
                    span.set_attribute("job.deduplicated", True)
                    if self._metrics:
                        self._metrics.record_job_deduplicated(queue.value, resolved.value)
                    return EnqueueResult(
                        job_type=resolved,
                        queue=queue,
                        deduplicated=True,
                        dedup_key=dedup_key,
                    )

            durable_job_id = None
            try:
                if create_record and self._recorder is not None:
                    durable_job_id = await self._recorder.create_pending(
                        job_type=resolved.value,
                        queue=queue.value,
                        payload=data,
                        max_attempts=opts.attempts,
                        priority=opts.priority,
                    )
                    data[PAYLOAD_DURABLE_JOB_ID] = str(durable_job_id)

                item = await self._backend.add(queue.value, resolved.value, data, opts)
            except Exception:
                if durable_job_id is not None:
                    await self._recorder.discard(durable_job_id)
                if dedup_key is not None:
                    await self._dedup.release(tenant_id, resolved.value)
                raise

            if durable_job_id is not None:
                await self._recorder.attach_broker_ref(durable_job_id, item.broker_ref)

        if self._metrics:
            self._metrics.record_job_enqueued(queue.value, resolved.value)

        logger.info(
            "Job enqueued",
            extra={
                "job_type": resolved.value,
                "queue": queue.value,
                "item_id": item.id,
                "tenant_id": tenant_id,
                "durable_job_id": str(durable_job_id) if durable_job_id else None,
                "delay_ms": opts.delay_ms,
            },
        )
        return EnqueueResult(
            job_type=resolved,
            queue=queue,
            item_id=item.id,
            durable_job_id=durable_job_id,
            dedup_key=dedup_key,
        )

    async def schedule(
        self,
        job_type: JobType | str,
        payload: Mapping[str, Any] | None = None,
        options: Mapping[str, Any] | None = None,
    ) -> EnqueueResult:
        """Enqueue a repeatable job; its durable record is created on first run."""
        return await self.enqueue(job_type, payload, options, create_record=False)

    # Inspection

    async def get_queue_counts(self, queue: QueueName | str) -> QueueCounts:
        name = resolve_queue(queue).value
        counts = await self._backend.counts(name)
        if self._metrics:
            for state in ItemState:
                self._metrics.update_queue_depth(name, state.value, getattr(counts, state.value))
        return counts

    async def get_fleet_counts(self) -> tuple[dict[str, QueueCounts], QueueCounts]:
        """Counts for every queue, plus totals across the fleet."""
        per_queue: dict[str, QueueCounts] = {}
        totals = QueueCounts()
        for queue in self.queue_names:
            counts = await self.get_queue_counts(queue)
            per_queue[queue.value] = counts
            totals = totals + counts
        return per_queue, totals

    async def is_paused(self, queue: QueueName | str) -> bool:
        return await self._backend.is_paused(resolve_queue(queue).value)

    async def list_items(
        self,
        queue: QueueName | str,
        state: ItemState | str,
        limit: int = RECENT_ITEMS_DEFAULT,
    ) -> list[QueueItem]:
        """Most recent items in a state, capped at RECENT_ITEMS_MAX."""
        limit = max(1, min(limit, RECENT_ITEMS_MAX))
        return await self._backend.list_items(
            resolve_queue(queue).value, ItemState(state), 0, limit - 1
        )

    async def get_item(self, queue: QueueName | str, item_id: str) -> QueueItem | None:
        return await self._backend.get_item(resolve_queue(queue).value, item_id)

    # Control

    async def pause_queue(self, queue: QueueName | str) -> None:
        name = resolve_queue(queue).value
        await self._backend.pause(name)
        logger.warning("Queue paused", extra={"queue": name})

    async def resume_queue(self, queue: QueueName | str) -> None:
        name = resolve_queue(queue).value
        await self._backend.resume(name)
        logger.info("Queue resumed", extra={"queue": name})

    async def retry_item(self, queue: QueueName | str, item_id: str) -> bool:
        """
        Send a failed item back to waiting.

        Raises:
            ItemStateError: If the item is not failed.
        """
        name = resolve_queue(queue).value
        retried = await self._backend.retry_item(name, item_id)
        if retried:
            logger.info("Item retried by operator", extra={"queue": name, "item_id": item_id})
        return retried

    async def remove_item(self, queue: QueueName | str, item_id: str) -> bool:
        """
        Delete an item that is not active.

        Removing a waiting or delayed item ends its work: the dedup marker
        is released and the durable record is settled as FAILED, so the
        tenant can enqueue the job type again.

        Raises:
            ItemStateError: If the item is active.
        """
        name = resolve_queue(queue).value
        item = await self._backend.get_item(name, item_id)
        if item is None:
            return False
        removed = await self._backend.remove_item(name, item_id)
        if not removed:
            return False

        if item.state in (ItemState.WAITING, ItemState.DELAYED):
            if self._guarded_by_dedup(item):
                await self._dedup.release(item.tenant_id, item.name)
            if self._recorder is not None:
                await self._recorder.record_transition(
                    item, JobStatus.FAILED, error=REMOVED_BY_OPERATOR
                )

        logger.info(
            "Item removed by operator",
            extra={"queue": name, "item_id": item_id, "state": item.state},
        )
        return True

    def _guarded_by_dedup(self, item: QueueItem) -> bool:
        try:
            spec = spec_for(resolve_job_type(item.name))
        except ConfigurationError:
            return False
        return spec.dedup and self._dedup.applies_to(item.tenant_id)

    async def _memory_human(self) -> str | None:
        if self._store is None:
            return None
        try:
            return (await self._store.memory_info()).used_human
        except CoordinationStoreError:
            logger.warning("Could not read coordination store memory", exc_info=True)
            return None

    async def clean_all_queues(
        self,
        completed_grace_ms: int | None = None,
        failed_grace_ms: int | None = None,
        limit: int | None = None,
    ) -> dict[str, Any]:
        """
        Remove old completed and failed items from every queue.

        Returns:
            removed per queue and state, the total, and store memory
            before and after.
        """
        completed_grace = (
            self._settings.clean_completed_grace_ms if completed_grace_ms is None else completed_grace_ms
        )
        failed_grace = self._settings.clean_failed_grace_ms if failed_grace_ms is None else failed_grace_ms
        batch = limit or self._settings.clean_batch_size

        memory_before = await self._memory_human()
        removed: dict[str, dict[str, int]] = {}
        total = 0
        for queue in self.queue_names:
            completed = await self._backend.clean(queue.value, completed_grace, ItemState.COMPLETED, batch)
            failed = await self._backend.clean(queue.value, failed_grace, ItemState.FAILED, batch)
            removed[queue.value] = {"completed": len(completed), "failed": len(failed)}
            total += len(completed) + len(failed)
        memory_after = await self._memory_human()

        logger.info(
            "Queues cleaned",
            extra={
                "total_removed": total,
                "memory_before": memory_before,
                "memory_after": memory_after,
            },
        )
        return {
            "removed": removed,
            "total_removed": total,
            "memory_before": memory_before,
            "memory_after": memory_after,
        }

    async def close(self) -> None:
        await self._backend.close()
