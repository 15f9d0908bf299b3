"""
Per-tenant job deduplication.

A marker key per (tenant, job type) is claimed by the producer before
enqueue and released only when the work it guards can no longer run
again: on completion, or on a failure with every attempt used.
"""

import logging

from orchestrator.constants import ALL_TENANTS, DEDUP_KEY_PREFIX
from orchestrator.coordination.base import CoordinationStore
from orchestrator.errors import CoordinationStoreError
from orchestrator.types.events import JobEvent, JobEventKind

logger = logging.getLogger(__name__)


class DedupController:
    """
    Advisory guard against concurrent duplicate jobs.

    Not a broker constraint: a producer that skips claim() can still
    enqueue a duplicate, which costs repeated idempotent work only.
    """

    def __init__(self, store: CoordinationStore, ttl_seconds: int = 24 * 60 * 60):
        self._store = store
        # Safety net for keys orphaned by a crash before the terminal event
        self._ttl_ms = ttl_seconds * 1000 if ttl_seconds > 0 else None

    @staticmethod
    def applies_to(tenant_id: str | None) -> bool:
        """Fan-out and tenant-less jobs are never deduplicated."""
        return bool(tenant_id) and tenant_id != ALL_TENANTS

    @staticmethod
    def key_for(tenant_id: str, job_type: str) -> str:
        return f"{DEDUP_KEY_PREFIX}:{tenant_id}:{job_type}"

    async def claim(self, tenant_id: str | None, job_type: str) -> bool:
        """
        Claim the marker for (tenant, job type).

        Returns:
            False if equivalent work is already outstanding. True if the
            claim succeeded, dedup does not apply, or the store is
            unreachable (a duplicate is cheaper than dropped work).
        """
        if not self.applies_to(tenant_id):
            return True
        key = self.key_for(tenant_id, job_type)
        try:
            claimed = await self._store.set_if_absent(key, "1", ttl_ms=self._ttl_ms)
        except CoordinationStoreError:
            logger.warning(
                "Dedup check unavailable, enqueueing without it",
                exc_info=True,
                extra={"dedup_key": key},
            )
            return True
        if not claimed:
            logger.info(
                "Duplicate job suppressed",
                extra={"dedup_key": key, "tenant_id": tenant_id, "job_type": job_type},
            )
        return claimed

    async def release(self, tenant_id: str | None, job_type: str) -> bool:
        """Delete the marker. Store errors are logged, never raised."""
        if not self.applies_to(tenant_id):
            return False
        key = self.key_for(tenant_id, job_type)
        try:
            released = await self._store.delete(key)
        except CoordinationStoreError:
            logger.error("Failed to release dedup key", exc_info=True, extra={"dedup_key": key})
            return False
        logger.debug("Dedup key released", extra={"dedup_key": key, "existed": released})
        return released

    async def is_held(self, tenant_id: str | None, job_type: str) -> bool:
        if not self.applies_to(tenant_id):
            return False
        return await self._store.exists(self.key_for(tenant_id, job_type))

    @staticmethod
    def should_release(event: JobEvent) -> bool:
        """
        Whether an event ends the guarded work.

        A failure releases only when attempts_made >= max_attempts; while
        a retry is pending the key must stay so duplicates are still
        suppressed.
        """
        if event.kind == JobEventKind.COMPLETED:
            return True
        return event.attempts_made >= event.max_attempts

    async def on_event(self, event: JobEvent) -> None:
        """Lifecycle subscriber."""
        if not self.should_release(event):
            return
        await self.release(event.tenant_id, event.job_type)
