"""
In-process coordination store for tests and single-process runs.
"""

import asyncio
import time
from typing import Callable

from orchestrator.coordination.base import CoordinationStore, MemoryInfo, human_bytes


class MemoryCoordinationStore(CoordinationStore):
    """
    Dict-backed store with millisecond expiry.

    Expiry is evaluated lazily against a monotonic clock, which can be
    replaced to make TTL behaviour deterministic in tests.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = asyncio.Lock()

    def _expires_at(self, ttl_ms: int | None) -> float | None:
        return None if ttl_ms is None else self._clock() + ttl_ms / 1000

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set_if_absent(self, key: str, value: str, ttl_ms: int | None = None) -> bool:
        async with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expires_at(ttl_ms))
            return True

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        async with self._lock:
            if self._live(key) != expected:
                return False
            del self._data[key]
            return True

    async def get(self, key: str) -> str | None:
        async with self._lock:
            return self._live(key)

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        async with self._lock:
            self._data[key] = (value, self._expires_at(ttl_ms))

    async def delete(self, key: str) -> bool:
        async with self._lock:
            existed = self._live(key) is not None
            self._data.pop(key, None)
            return existed

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live(key) is not None

    async def ttl_ms(self, key: str) -> int | None:
        """Remaining TTL in milliseconds, None if the key has no expiry or is absent."""
        async with self._lock:
            if self._live(key) is None:
                return None
            expires_at = self._data[key][1]
            if expires_at is None:
                return None
            return int((expires_at - self._clock()) * 1000)

    async def memory_info(self) -> MemoryInfo:
        async with self._lock:
            used = sum(len(k) + len(v) for k, (v, _) in self._data.items())
        return MemoryInfo(
            used_bytes=used,
            max_bytes=0,
            used_human=human_bytes(used),
            max_human=human_bytes(0),
        )

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        async with self._lock:
            self._data.clear()
