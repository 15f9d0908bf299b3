"""
In-memory queue backend.

Single-process and volatile; suitable for tests and local development.
Behaves like the Redis backend, including lock tokens and stall recovery.
"""

import asyncio
import copy
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from orchestrator.broker.base import (
    ItemOptions,
    ItemState,
    QueueBackend,
    QueueCounts,
    QueueItem,
    now_ms,
)
from orchestrator.errors import ItemStateError


@dataclass
class _QueueState:
    """Everything the backend tracks for one named queue."""

    items: dict[str, QueueItem] = field(default_factory=dict)
    waiting: dict[str, tuple[int, int]] = field(default_factory=dict)  # id -> (priority, seq)
    active: dict[str, int] = field(default_factory=dict)  # id -> lock expiry ms
    delayed: dict[str, int] = field(default_factory=dict)  # id -> due ms
    completed: dict[str, int] = field(default_factory=dict)  # id -> finished ms
    failed: dict[str, int] = field(default_factory=dict)  # id -> finished ms
    paused: bool = False
    next_id: int = 0


class MemoryQueueBackend(QueueBackend):
    """Dict-backed broker guarded by one asyncio lock."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self._clock = clock
        self._queues: dict[str, _QueueState] = {}
        self._lock = asyncio.Lock()

    def _queue(self, queue: str) -> _QueueState:
        return self._queues.setdefault(queue, _QueueState())

    @staticmethod
    def _state_of(q: _QueueState, item_id: str) -> ItemState | None:
        for state, index in (
            (ItemState.WAITING, q.waiting),
            (ItemState.ACTIVE, q.active),
            (ItemState.DELAYED, q.delayed),
            (ItemState.COMPLETED, q.completed),
            (ItemState.FAILED, q.failed),
        ):
            if item_id in index:
                return state
        return None

    def _snapshot(self, q: _QueueState, item_id: str) -> QueueItem:
        item = q.items[item_id]
        return replace(item, data=copy.deepcopy(item.data), state=self._state_of(q, item_id))

    @staticmethod
    def _enqueue_waiting(q: _QueueState, item: QueueItem) -> None:
        q.waiting[item.id] = (item.opts.priority, int(item.id))

    def _promote_due(self, q: _QueueState, now: int) -> None:
        for item_id, due in list(q.delayed.items()):
            if due <= now:
                del q.delayed[item_id]
                self._enqueue_waiting(q, q.items[item_id])

    @staticmethod
    def _trim(q: _QueueState, index: dict[str, int], keep: int) -> None:
        if keep < 0 or len(index) <= keep:
            return
        oldest = sorted(index, key=lambda item_id: (index[item_id], int(item_id)))
        for item_id in oldest[: len(index) - keep]:
            del index[item_id]
            q.items.pop(item_id, None)

    @staticmethod
    def _owns(q: _QueueState, item_id: str, token: str) -> bool:
        item = q.items.get(item_id)
        return item is not None and item_id in q.active and item.lock_token == token

    async def add(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        opts: ItemOptions,
    ) -> QueueItem:
        async with self._lock:
            q = self._queue(queue)
            q.next_id += 1
            now = self._clock()
            item = QueueItem(
                id=str(q.next_id),
                queue=queue,
                name=name,
                data=copy.deepcopy(data),
                opts=opts,
                timestamp=now,
            )
            q.items[item.id] = item
            if opts.delay_ms > 0:
                q.delayed[item.id] = now + opts.delay_ms
            else:
                self._enqueue_waiting(q, item)
            return self._snapshot(q, item.id)

    async def fetch_next(self, queue: str, token: str, lock_ms: int) -> QueueItem | None:
        async with self._lock:
            q = self._queue(queue)
            now = self._clock()
            self._promote_due(q, now)
            if q.paused or not q.waiting:
                return None

            item_id = min(q.waiting, key=q.waiting.__getitem__)
            del q.waiting[item_id]
            q.active[item_id] = now + lock_ms
            q.items[item_id] = replace(q.items[item_id], lock_token=token, processed_on=now)
            return self._snapshot(q, item_id)

    async def extend_lock(self, queue: str, item_id: str, token: str, lock_ms: int) -> bool:
        async with self._lock:
            q = self._queue(queue)
            if not self._owns(q, item_id, token):
                return False
            q.active[item_id] = self._clock() + lock_ms
            return True

    async def complete(self, item: QueueItem, token: str, result: Any = None) -> bool:
        async with self._lock:
            q = self._queue(item.queue)
            if not self._owns(q, item.id, token):
                return False
            now = self._clock()
            current = q.items[item.id]
            del q.active[item.id]
            q.items[item.id] = replace(
                current,
                attempts_made=current.attempts_made + 1,
                finished_on=now,
                return_value=copy.deepcopy(result),
                lock_token=None,
            )
            q.completed[item.id] = now
            self._trim(q, q.completed, current.opts.remove_on_complete)
            return True

    async def fail(
        self,
        item: QueueItem,
        token: str,
        error: str,
        *,
        attempts_made: int,
        retry_delay_ms: int | None,
    ) -> bool:
        async with self._lock:
            q = self._queue(item.queue)
            if not self._owns(q, item.id, token):
                return False
            now = self._clock()
            current = q.items[item.id]
            del q.active[item.id]
            updated = replace(
                current,
                attempts_made=attempts_made,
                failed_reason=error,
                lock_token=None,
            )

            if retry_delay_ms is None:
                q.items[item.id] = replace(updated, finished_on=now)
                q.failed[item.id] = now
                self._trim(q, q.failed, current.opts.remove_on_fail)
            elif retry_delay_ms > 0:
                q.items[item.id] = updated
                q.delayed[item.id] = now + retry_delay_ms
            else:
                q.items[item.id] = updated
                self._enqueue_waiting(q, updated)
            return True

    async def update_data(self, queue: str, item_id: str, data: dict[str, Any]) -> bool:
        async with self._lock:
            q = self._queue(queue)
            if item_id not in q.items:
                return False
            q.items[item_id] = replace(q.items[item_id], data=copy.deepcopy(data))
            return True

    async def get_item(self, queue: str, item_id: str) -> QueueItem | None:
        async with self._lock:
            q = self._queue(queue)
            if item_id not in q.items:
                return None
            return self._snapshot(q, item_id)

    async def recover_stalled(self, queue: str) -> list[str]:
        async with self._lock:
            q = self._queue(queue)
            now = self._clock()
            stalled = [item_id for item_id, expiry in q.active.items() if expiry <= now]
            for item_id in stalled:
                del q.active[item_id]
                q.items[item_id] = replace(q.items[item_id], lock_token=None)
                self._enqueue_waiting(q, q.items[item_id])
            return stalled

    async def counts(self, queue: str) -> QueueCounts:
        async with self._lock:
            q = self._queue(queue)
            return QueueCounts(
                waiting=len(q.waiting),
                active=len(q.active),
                completed=len(q.completed),
                failed=len(q.failed),
                delayed=len(q.delayed),
                paused=q.paused,
            )

    async def list_items(
        self,
        queue: str,
        state: ItemState,
        start: int = 0,
        end: int = 49,
    ) -> list[QueueItem]:
        async with self._lock:
            q = self._queue(queue)
            if state == ItemState.WAITING:
                ordered = sorted(q.waiting, key=q.waiting.__getitem__)
            else:
                index = {
                    ItemState.ACTIVE: q.active,
                    ItemState.DELAYED: q.delayed,
                    ItemState.COMPLETED: q.completed,
                    ItemState.FAILED: q.failed,
                }[state]
                newest_first = state in (ItemState.COMPLETED, ItemState.FAILED)
                ordered = sorted(
                    index,
                    key=lambda item_id: (index[item_id], int(item_id)),
                    reverse=newest_first,
                )
            return [self._snapshot(q, item_id) for item_id in ordered[start : end + 1]]

    async def pause(self, queue: str) -> None:
        async with self._lock:
            self._queue(queue).paused = True

    async def resume(self, queue: str) -> None:
        async with self._lock:
            self._queue(queue).paused = False

    async def is_paused(self, queue: str) -> bool:
        async with self._lock:
            return self._queue(queue).paused

    async def retry_item(self, queue: str, item_id: str) -> bool:
        async with self._lock:
            q = self._queue(queue)
            if item_id not in q.items:
                return False
            if item_id not in q.failed:
                raise ItemStateError(f"Item {queue}:{item_id} is not failed")
            del q.failed[item_id]
            q.items[item_id] = replace(
                q.items[item_id],
                attempts_made=0,
                failed_reason=None,
                finished_on=None,
                processed_on=None,
            )
            self._enqueue_waiting(q, q.items[item_id])
            return True

    async def remove_item(self, queue: str, item_id: str) -> bool:
        async with self._lock:
            q = self._queue(queue)
            if item_id not in q.items:
                return False
            if item_id in q.active:
                raise ItemStateError(f"Item {queue}:{item_id} is active and cannot be removed")
            for index in (q.waiting, q.delayed, q.completed, q.failed):
                index.pop(item_id, None)
            del q.items[item_id]
            return True

    async def clean(self, queue: str, grace_ms: int, state: ItemState, limit: int) -> list[str]:
        if state not in (ItemState.COMPLETED, ItemState.FAILED):
            raise ValueError(f"Cannot clean items in state {state}")
        async with self._lock:
            q = self._queue(queue)
            index = q.completed if state == ItemState.COMPLETED else q.failed
            cutoff = self._clock() - grace_ms
            expired = sorted(
                (item_id for item_id, finished in index.items() if finished <= cutoff),
                key=index.__getitem__,
            )[:limit]
            for item_id in expired:
                del index[item_id]
                q.items.pop(item_id, None)
            return expired
