"""
Broker types and backend interface.

The broker owns every in-flight queue item for its lifetime: waiting ->
active -> completed / failed, with delayed as the holding state for
backoff and scheduled items. Workers only observe items through
fetch_next and settle them through complete / fail.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field, replace
from enum import StrEnum
from typing import Any
from uuid import UUID

from orchestrator.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_REMOVE_ON_COMPLETE,
    DEFAULT_REMOVE_ON_FAIL,
    PAYLOAD_DURABLE_JOB_ID,
    PAYLOAD_TENANT_ID,
)


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ItemState(StrEnum):
    """Broker-side item states."""

    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(StrEnum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


@dataclass(frozen=True)
class Backoff:
    """Delay policy between attempts."""

    type: BackoffType = BackoffType.EXPONENTIAL
    delay_ms: int = 0

    def delay_for(self, attempts_made: int) -> int:
        """
        Delay before the next attempt, given how many attempts have finished.

        Exponential backoff doubles per finished attempt:
        delay, 2*delay, 4*delay, ...
        """
        if self.type == BackoffType.FIXED:
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "Backoff":
        if not data:
            return cls()
        return cls(type=BackoffType(data.get("type", BackoffType.EXPONENTIAL)), delay_ms=int(data.get("delay_ms", 0)))


@dataclass(frozen=True)
class ItemOptions:
    """Per-item delivery options."""

    attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: Backoff = field(default_factory=Backoff)
    delay_ms: int = 0
    priority: int = 0  # lower runs first
    remove_on_complete: int = DEFAULT_REMOVE_ON_COMPLETE
    remove_on_fail: int = DEFAULT_REMOVE_ON_FAIL

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ItemOptions":
        if not data:
            return cls()
        return cls(
            attempts=int(data.get("attempts", DEFAULT_MAX_ATTEMPTS)),
            backoff=Backoff.from_dict(data.get("backoff")),
            delay_ms=int(data.get("delay_ms", 0)),
            priority=int(data.get("priority", 0)),
            remove_on_complete=int(data.get("remove_on_complete", DEFAULT_REMOVE_ON_COMPLETE)),
            remove_on_fail=int(data.get("remove_on_fail", DEFAULT_REMOVE_ON_FAIL)),
        )


@dataclass(frozen=True)
class QueueItem:
    """
    A snapshot of one in-flight broker entry.

    attempts_made counts finished attempts, so the attempt currently
    running is attempts_made + 1.
    """

    id: str
    queue: str
    name: str
    data: dict[str, Any]
    opts: ItemOptions = field(default_factory=ItemOptions)
    attempts_made: int = 0
    timestamp: int = 0
    processed_on: int | None = None
    finished_on: int | None = None
    failed_reason: str | None = None
    return_value: Any = None
    lock_token: str | None = None
    state: ItemState | None = None

    @property
    def max_attempts(self) -> int:
        return self.opts.attempts

    @property
    def tenant_id(self) -> str | None:
        tenant_id = self.data.get(PAYLOAD_TENANT_ID)
        return str(tenant_id) if tenant_id else None

    @property
    def durable_job_id(self) -> UUID | None:
        raw = self.data.get(PAYLOAD_DURABLE_JOB_ID)
        if not raw:
            return None
        try:
            return UUID(str(raw))
        except ValueError:
            return None

    @property
    def broker_ref(self) -> str:
        return f"{self.queue}:{self.id}"

    def with_data(self, data: dict[str, Any]) -> "QueueItem":
        return replace(self, data=data)

    def to_summary(self) -> dict[str, Any]:
        """Operator-facing view of the item."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "state": self.state.value if self.state else None,
            "attempts_made": self.attempts_made,
            "max_attempts": self.max_attempts,
            "timestamp": self.timestamp,
            "processed_on": self.processed_on,
            "finished_on": self.finished_on,
            "failed_reason": self.failed_reason,
        }


@dataclass(frozen=True)
class QueueCounts:
    """Per-state item counts for one queue."""

    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    @property
    def total(self) -> int:
        return self.waiting + self.active + self.completed + self.failed + self.delayed

    def __add__(self, other: "QueueCounts") -> "QueueCounts":
        return QueueCounts(
            waiting=self.waiting + other.waiting,
            active=self.active + other.active,
            completed=self.completed + other.completed,
            failed=self.failed + other.failed,
            delayed=self.delayed + other.delayed,
        )

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "total": self.total}


class QueueBackend(ABC):
    """
    Storage and delivery for named queues.

    Every state change on an active item is guarded by the lock token
    handed out by fetch_next; a worker whose lock was reclaimed as
    stalled cannot settle the item any more.
    """

    @abstractmethod
    async def add(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        opts: ItemOptions,
    ) -> QueueItem:
        """Add an item, delayed if opts.delay_ms > 0."""

    @abstractmethod
    async def fetch_next(self, queue: str, token: str, lock_ms: int) -> QueueItem | None:
        """
        Move the next waiting item to active under token.

        Due delayed items are promoted first. Returns None when the queue
        is empty or paused.
        """

    @abstractmethod
    async def extend_lock(self, queue: str, item_id: str, token: str, lock_ms: int) -> bool:
        ...

    @abstractmethod
    async def complete(self, item: QueueItem, token: str, result: Any = None) -> bool:
        """Active -> completed. Returns False if the lock was lost."""

    @abstractmethod
    async def fail(
        self,
        item: QueueItem,
        token: str,
        error: str,
        *,
        attempts_made: int,
        retry_delay_ms: int | None,
    ) -> bool:
        """
        Settle a failed attempt.

        With retry_delay_ms the item goes back to waiting (or delayed);
        with None it moves to failed. Returns False if the lock was lost.
        """

    @abstractmethod
    async def update_data(self, queue: str, item_id: str, data: dict[str, Any]) -> bool:
        """Replace an item's payload. Returns False if the item is gone."""

    @abstractmethod
    async def get_item(self, queue: str, item_id: str) -> QueueItem | None:
        ...

    @abstractmethod
    async def recover_stalled(self, queue: str) -> list[str]:
        """Return active items whose lock expired to waiting."""

    @abstractmethod
    async def counts(self, queue: str) -> QueueCounts:
        ...

    @abstractmethod
    async def list_items(
        self,
        queue: str,
        state: ItemState,
        start: int = 0,
        end: int = 49,
    ) -> list[QueueItem]:
        """Items in a state, newest first for completed / failed. end is inclusive."""

    @abstractmethod
    async def pause(self, queue: str) -> None:
        ...

    @abstractmethod
    async def resume(self, queue: str) -> None:
        ...

    @abstractmethod
    async def is_paused(self, queue: str) -> bool:
        ...

    @abstractmethod
    async def retry_item(self, queue: str, item_id: str) -> bool:
        """
        Failed -> waiting with attempts reset.

        Returns False if the item does not exist.

        Raises:
            ItemStateError: If the item is not failed.
        """

    @abstractmethod
    async def remove_item(self, queue: str, item_id: str) -> bool:
        """
        Delete an item that is not currently active.

        Returns False if the item does not exist.

        Raises:
            ItemStateError: If the item is active.
        """

    @abstractmethod
    async def clean(self, queue: str, grace_ms: int, state: ItemState, limit: int) -> list[str]:
        """Remove up to limit completed / failed items finished more than grace_ms ago."""

    async def close(self) -> None:
        """Release backend resources. The default holds none."""
