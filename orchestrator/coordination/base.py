"""
Coordination store capability interface.

Locks, dedup keys and the memory monitor only need a handful of atomic
primitives. Anything offering them (a Redis connection, or an in-process
fake in tests) can be injected.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass


def human_bytes(value: int) -> str:
    """Format a byte count the way Redis INFO does (e.g. 1.50M)."""
    if value < 1024:
        return f"{value}B"
    size = value / 1024
    for unit in ("K", "M"):
        if size < 1024:
            return f"{size:.2f}{unit}"
        size /= 1024
    return f"{size:.2f}G"


@dataclass(frozen=True)
class MemoryInfo:
    """Memory usage reported by the coordination store."""

    used_bytes: int
    max_bytes: int
    used_human: str
    max_human: str

    @property
    def usage_ratio(self) -> float | None:
        """Used / max, or None when the store has no memory limit."""
        if self.max_bytes <= 0:
            return None
        return self.used_bytes / self.max_bytes


class CoordinationStore(ABC):
    """
    Shared key-value store used for locks, dedup keys and broker state.

    Implementations raise CoordinationStoreError when the store cannot
    be reached; callers decide whether to fail open or closed.
    """

    @abstractmethod
    async def set_if_absent(self, key: str, value: str, ttl_ms: int | None = None) -> bool:
        """Atomically set key if it does not exist. Returns True if set."""

    @abstractmethod
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Delete key only if its value still equals expected. Returns True if deleted."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        ...

    @abstractmethod
    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def exists(self, key: str) -> bool:
        ...

    @abstractmethod
    async def memory_info(self) -> MemoryInfo:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the underlying connection."""
