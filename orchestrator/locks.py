"""
Distributed mutual exclusion over the coordination store.

acquire() is a single conditional set with a TTL; release is a scripted
compare-and-delete keyed by a random token, so a holder whose TTL lapsed
can never release a lock somebody else now holds. There is no heartbeat:
holders must pick a TTL longer than their worst-case run.
"""

import logging
import secrets
from typing import Awaitable, Callable, TypeVar

from orchestrator.constants import LOCK_KEY_PREFIX
from orchestrator.coordination.base import CoordinationStore
from orchestrator.errors import CoordinationStoreError
from orchestrator.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

T = TypeVar("T")

ReleaseFn = Callable[[], Awaitable[None]]


class DistributedLock:
    """Named leases shared by every process using the same store."""

    def __init__(self, store: CoordinationStore, metrics: MetricsCollector | None = None):
        self._store = store
        self._metrics = metrics

    @staticmethod
    def key_for(name: str) -> str:
        return f"{LOCK_KEY_PREFIX}:{name}"

    def _record(self, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_lock(outcome)

    async def acquire(self, name: str, ttl_ms: int) -> ReleaseFn | None:
        """
        Try to take the lock without waiting.

        Args:
            name: Lock name; the store key is lock:{name}.
            ttl_ms: Lease length. The lock expires on its own after this.

        Returns:
            An async release function, or None if the lock is held
            elsewhere or the store is unreachable.
        """
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be positive")

        key = self.key_for(name)
        token = secrets.token_hex(16)
        try:
            acquired = await self._store.set_if_absent(key, token, ttl_ms=ttl_ms)
        except CoordinationStoreError:
            # Fail closed: a singleton operation must not run twice
            logger.error("Lock acquisition failed", exc_info=True, extra={"lock": name})
            self._record("error")
            return None

        if not acquired:
            logger.debug("Lock held elsewhere", extra={"lock": name})
            self._record("contended")
            return None

        logger.info("Lock acquired", extra={"lock": name, "ttl_ms": ttl_ms})
        self._record("acquired")
        released = False

        async def release() -> None:
            nonlocal released
            if released:
                return
            released = True
            try:
                deleted = await self._store.compare_and_delete(key, token)
            except CoordinationStoreError:
                # The lease still expires on its own
                logger.error("Lock release failed", exc_info=True, extra={"lock": name})
                return
            if deleted:
                logger.info("Lock released", extra={"lock": name})
            else:
                logger.warning("Lock expired before release", extra={"lock": name})

        return release

    async def run_exclusive(
        self,
        name: str,
        ttl_ms: int,
        fn: Callable[[], Awaitable[T]],
    ) -> tuple[bool, T | None]:
        """
        Run fn only if the lock can be taken, releasing it afterwards.

        Returns:
            (ran, result). ran is False when the lock was not acquired.
        """
        release = await self.acquire(name, ttl_ms)
        if release is None:
            return False, None
        try:
            return True, await fn()
        finally:
            await release()

    async def is_locked(self, name: str) -> bool:
        return await self._store.exists(self.key_for(name))
