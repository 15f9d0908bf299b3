"""
Unit tests for the distributed lock.
"""

import asyncio

import pytest

from orchestrator.coordination import MemoryCoordinationStore
from orchestrator.locks import DistributedLock
from orchestrator.observability.metrics import MetricsCollector


def lock_count(metrics: MetricsCollector, outcome: str) -> float:
    return metrics.lock_acquisitions.labels(outcome=outcome)._value.get()


class TestDistributedLock:
    """Tests for DistributedLock."""

    async def test_acquire_then_contended(self, locks: DistributedLock, metrics: MetricsCollector):
        """Only one holder at a time."""
        release = await locks.acquire("roadmap", ttl_ms=60_000)
        assert release is not None

        assert await locks.acquire("roadmap", ttl_ms=60_000) is None
        assert lock_count(metrics, "acquired") == 1
        assert lock_count(metrics, "contended") == 1

        await release()
        assert await locks.is_locked("roadmap") is False
        assert await locks.acquire("roadmap", ttl_ms=60_000) is not None

    async def test_simultaneous_acquire_has_one_winner(self, store: MemoryCoordinationStore):
        """Two processes racing for the same lock: exactly one gets a release."""
        first, second = DistributedLock(store), DistributedLock(store)

        releases = await asyncio.gather(
            first.acquire("roadmap-scan", ttl_ms=300_000),
            second.acquire("roadmap-scan", ttl_ms=300_000),
        )

        winners = [release for release in releases if release is not None]
        assert len(winners) == 1
        await winners[0]()
        assert await first.is_locked("roadmap-scan") is False

    async def test_key_layout(self, locks: DistributedLock, store: MemoryCoordinationStore):
        await locks.acquire("roadmap", ttl_ms=1000)
        assert await store.exists("lock:roadmap")

    async def test_stale_release_does_not_delete_new_holder(
        self,
        locks: DistributedLock,
        store: MemoryCoordinationStore,
    ):
        """A holder whose lease lapsed must not free the next holder's lock."""
        stale_release = await locks.acquire("roadmap", ttl_ms=1000)
        # Simulate expiry and a new holder
        await store.delete("lock:roadmap")
        fresh_release = await locks.acquire("roadmap", ttl_ms=1000)
        assert fresh_release is not None

        await stale_release()

        assert await locks.is_locked("roadmap") is True
        await fresh_release()
        assert await locks.is_locked("roadmap") is False

    async def test_release_is_idempotent(self, locks: DistributedLock):
        release = await locks.acquire("roadmap", ttl_ms=1000)
        await release()
        await release()
        assert await locks.is_locked("roadmap") is False

    async def test_fails_closed_when_store_unreachable(self, unreachable_store, metrics: MetricsCollector):
        locks = DistributedLock(unreachable_store, metrics=metrics)

        assert await locks.acquire("roadmap", ttl_ms=1000) is None
        assert lock_count(metrics, "error") == 1

    async def test_release_errors_are_swallowed(self, store: MemoryCoordinationStore, unreachable_store):
        release = await DistributedLock(store).acquire("roadmap", ttl_ms=1000)
        # Swap in a dead connection under the held lock
        store.compare_and_delete = unreachable_store.compare_and_delete

        await release()

    async def test_rejects_non_positive_ttl(self, locks: DistributedLock):
        with pytest.raises(ValueError):
            await locks.acquire("roadmap", ttl_ms=0)

    async def test_run_exclusive(self, locks: DistributedLock):
        calls = []

        async def work():
            calls.append("ran")
            # Nested attempt while held is skipped
            return await locks.run_exclusive("roadmap", 1000, work)

        ran, result = await locks.run_exclusive("roadmap", 1000, work)

        assert ran is True
        assert result == (False, None)
        assert calls == ["ran"]
        assert await locks.is_locked("roadmap") is False

    async def test_run_exclusive_releases_on_error(self, locks: DistributedLock):
        async def boom():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await locks.run_exclusive("roadmap", 1000, boom)

        assert await locks.is_locked("roadmap") is False
