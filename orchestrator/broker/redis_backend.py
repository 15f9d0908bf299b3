"""
Redis queue backend.

Key layout per queue (prefix "orq" by default):

    {prefix}:{queue}:id          INCR counter for item ids
    {prefix}:{queue}:job:{id}    hash holding the item
    {prefix}:{queue}:wait        zset, score = priority * 1e13 + id
    {prefix}:{queue}:active      zset, score = lock expiry (ms)
    {prefix}:{queue}:delayed     zset, score = due time (ms)
    {prefix}:{queue}:completed   zset, score = finished time (ms)
    {prefix}:{queue}:failed      zset, score = finished time (ms)
    {prefix}:{queue}:paused      flag

Every transition that has to be atomic runs as a Lua script.
"""

import json
import logging
from typing import Any

import redis.asyncio as redis
from redis.exceptions import RedisError

from orchestrator.broker.base import (
    ItemOptions,
    ItemState,
    QueueBackend,
    QueueCounts,
    QueueItem,
    now_ms,
)
from orchestrator.errors import CoordinationStoreError, ItemStateError

logger = logging.getLogger(__name__)

PRIORITY_FACTOR = 10_000_000_000_000

# Promote due delayed items, then pop the head of wait into active.
FETCH_SCRIPT = """
local wait_key, active_key, delayed_key, paused_key = KEYS[1], KEYS[2], KEYS[3], KEYS[4]
local now = tonumber(ARGV[1])
local lock_ms = tonumber(ARGV[2])
local token = ARGV[3]
local job_prefix = ARGV[4]
local factor = tonumber(ARGV[5])

local due = redis.call('ZRANGEBYSCORE', delayed_key, '-inf', now, 'LIMIT', 0, 1000)
for _, id in ipairs(due) do
    redis.call('ZREM', delayed_key, id)
    local priority = tonumber(redis.call('HGET', job_prefix .. id, 'priority') or '0')
    redis.call('ZADD', wait_key, priority * factor + tonumber(id), id)
end

if redis.call('EXISTS', paused_key) == 1 then
    return false
end

local popped = redis.call('ZPOPMIN', wait_key)
if #popped == 0 then
    return false
end

local id = popped[1]
redis.call('ZADD', active_key, now + lock_ms, id)
redis.call('HSET', job_prefix .. id, 'lock_token', token, 'processed_on', now)
return id
"""

EXTEND_LOCK_SCRIPT = """
local job_key = ARGV[4] .. ARGV[1]
if redis.call('HGET', job_key, 'lock_token') ~= ARGV[2] then
    return 0
end
if not redis.call('ZSCORE', KEYS[1], ARGV[1]) then
    return 0
end
redis.call('ZADD', KEYS[1], tonumber(ARGV[3]), ARGV[1])
return 1
"""

COMPLETE_SCRIPT = """
local active_key, completed_key = KEYS[1], KEYS[2]
local id, token, now = ARGV[1], ARGV[2], tonumber(ARGV[3])
local result, keep, job_prefix = ARGV[4], tonumber(ARGV[5]), ARGV[6]
local job_key = job_prefix .. id

if redis.call('HGET', job_key, 'lock_token') ~= token then
    return 0
end
if redis.call('ZREM', active_key, id) == 0 then
    return 0
end

redis.call('HINCRBY', job_key, 'attempts_made', 1)
redis.call('HSET', job_key, 'finished_on', now, 'return_value', result, 'lock_token', '')
redis.call('ZADD', completed_key, now, id)

if keep >= 0 then
    local excess = redis.call('ZCARD', completed_key) - keep
    if excess > 0 then
        local old = redis.call('ZRANGE', completed_key, 0, excess - 1)
        for _, old_id in ipairs(old) do
            redis.call('DEL', job_prefix .. old_id)
            redis.call('ZREM', completed_key, old_id)
        end
    end
end
return 1
"""

FAIL_SCRIPT = """
local active_key, wait_key, delayed_key, failed_key = KEYS[1], KEYS[2], KEYS[3], KEYS[4]
local id, token, now = ARGV[1], ARGV[2], tonumber(ARGV[3])
local reason, attempts_made, delay = ARGV[4], ARGV[5], tonumber(ARGV[6])
local keep, job_prefix, factor = tonumber(ARGV[7]), ARGV[8], tonumber(ARGV[9])
local job_key = job_prefix .. id

if redis.call('HGET', job_key, 'lock_token') ~= token then
    return 0
end
if redis.call('ZREM', active_key, id) == 0 then
    return 0
end

redis.call('HSET', job_key, 'attempts_made', attempts_made, 'failed_reason', reason, 'lock_token', '')

if delay < 0 then
    redis.call('HSET', job_key, 'finished_on', now)
    redis.call('ZADD', failed_key, now, id)
    if keep >= 0 then
        local excess = redis.call('ZCARD', failed_key) - keep
        if excess > 0 then
            local old = redis.call('ZRANGE', failed_key, 0, excess - 1)
            for _, old_id in ipairs(old) do
                redis.call('DEL', job_prefix .. old_id)
                redis.call('ZREM', failed_key, old_id)
            end
        end
    end
elseif delay > 0 then
    redis.call('ZADD', delayed_key, now + delay, id)
else
    local priority = tonumber(redis.call('HGET', job_key, 'priority') or '0')
    redis.call('ZADD', wait_key, priority * factor + tonumber(id), id)
end
return 1
"""

RECOVER_STALLED_SCRIPT = """
local active_key, wait_key = KEYS[1], KEYS[2]
local now, job_prefix, factor = tonumber(ARGV[1]), ARGV[2], tonumber(ARGV[3])

local stalled = redis.call('ZRANGEBYSCORE', active_key, '-inf', now)
for _, id in ipairs(stalled) do
    redis.call('ZREM', active_key, id)
    redis.call('HSET', job_prefix .. id, 'lock_token', '')
    local priority = tonumber(redis.call('HGET', job_prefix .. id, 'priority') or '0')
    redis.call('ZADD', wait_key, priority * factor + tonumber(id), id)
end
return stalled
"""

UPDATE_DATA_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 0 then
    return 0
end
redis.call('HSET', KEYS[1], 'data', ARGV[1])
return 1
"""

# Returns 1 on success, 0 if the item is gone, -1 if it is not failed.
RETRY_SCRIPT = """
local failed_key, wait_key = KEYS[1], KEYS[2]
local id, job_prefix, factor = ARGV[1], ARGV[2], tonumber(ARGV[3])
local job_key = job_prefix .. id

if redis.call('EXISTS', job_key) == 0 then
    return 0
end
if redis.call('ZREM', failed_key, id) == 0 then
    return -1
end
redis.call('HSET', job_key, 'attempts_made', 0)
redis.call('HDEL', job_key, 'failed_reason', 'finished_on', 'processed_on')
local priority = tonumber(redis.call('HGET', job_key, 'priority') or '0')
redis.call('ZADD', wait_key, priority * factor + tonumber(id), id)
return 1
"""

# Returns 1 on success, 0 if the item is gone, -1 if it is active.
REMOVE_SCRIPT = """
local id, job_prefix = ARGV[1], ARGV[2]
local job_key = job_prefix .. id

if redis.call('EXISTS', job_key) == 0 then
    return 0
end
if redis.call('ZSCORE', KEYS[2], id) then
    return -1
end
redis.call('ZREM', KEYS[1], id)
redis.call('ZREM', KEYS[3], id)
redis.call('ZREM', KEYS[4], id)
redis.call('ZREM', KEYS[5], id)
redis.call('DEL', job_key)
return 1
"""

CLEAN_SCRIPT = """
local ids = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
for _, id in ipairs(ids) do
    redis.call('DEL', ARGV[3] .. id)
    redis.call('ZREM', KEYS[1], id)
end
return ids
"""


def _int_or_none(value: str | None) -> int | None:
    if value in (None, ""):
        return None
    return int(value)


class RedisQueueBackend(QueueBackend):
    """
    Broker over sorted sets and hashes in Redis.

    The client is borrowed from the caller (normally the coordination
    store); close() leaves it open.
    """

    def __init__(self, client: redis.Redis, prefix: str = "orq"):
        self._client = client
        self._prefix = prefix
        self._fetch = client.register_script(FETCH_SCRIPT)
        self._extend = client.register_script(EXTEND_LOCK_SCRIPT)
        self._complete = client.register_script(COMPLETE_SCRIPT)
        self._fail = client.register_script(FAIL_SCRIPT)
        self._recover = client.register_script(RECOVER_STALLED_SCRIPT)
        self._update_data = client.register_script(UPDATE_DATA_SCRIPT)
        self._retry = client.register_script(RETRY_SCRIPT)
        self._remove = client.register_script(REMOVE_SCRIPT)
        self._clean = client.register_script(CLEAN_SCRIPT)

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self._prefix}:{queue}:{suffix}"

    def _job_prefix(self, queue: str) -> str:
        return self._key(queue, "job:")

    def _state_key(self, queue: str, state: ItemState) -> str:
        return self._key(queue, "wait" if state == ItemState.WAITING else state.value)

    def _item_from_hash(
        self,
        queue: str,
        item_id: str,
        fields: dict[str, str],
        state: ItemState | None,
    ) -> QueueItem:
        return_value = fields.get("return_value")
        return QueueItem(
            id=item_id,
            queue=queue,
            name=fields["name"],
            data=json.loads(fields.get("data") or "{}"),
            opts=ItemOptions.from_dict(json.loads(fields.get("opts") or "{}")),
            attempts_made=int(fields.get("attempts_made") or 0),
            timestamp=int(fields.get("timestamp") or 0),
            processed_on=_int_or_none(fields.get("processed_on")),
            finished_on=_int_or_none(fields.get("finished_on")),
            failed_reason=fields.get("failed_reason") or None,
            return_value=json.loads(return_value) if return_value else None,
            lock_token=fields.get("lock_token") or None,
            state=state,
        )

    async def _load(self, queue: str, item_id: str, state: ItemState | None) -> QueueItem | None:
        fields = await self._client.hgetall(self._job_prefix(queue) + item_id)
        if not fields:
            return None
        return self._item_from_hash(queue, item_id, fields, state)

    async def add(
        self,
        queue: str,
        name: str,
        data: dict[str, Any],
        opts: ItemOptions,
    ) -> QueueItem:
        try:
            item_id = str(await self._client.incr(self._key(queue, "id")))
            now = now_ms()
            fields = {
                "name": name,
                "data": json.dumps(data),
                "opts": json.dumps(opts.to_dict()),
                "priority": opts.priority,
                "attempts_made": 0,
                "timestamp": now,
            }
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self._job_prefix(queue) + item_id, mapping=fields)
                if opts.delay_ms > 0:
                    pipe.zadd(self._key(queue, "delayed"), {item_id: now + opts.delay_ms})
                else:
                    score = opts.priority * PRIORITY_FACTOR + int(item_id)
                    pipe.zadd(self._key(queue, "wait"), {item_id: score})
                await pipe.execute()
        except RedisError as e:
            raise CoordinationStoreError(f"Failed to add item to {queue}: {e}") from e

        return QueueItem(
            id=item_id,
            queue=queue,
            name=name,
            data=data,
            opts=opts,
            timestamp=now,
            state=ItemState.DELAYED if opts.delay_ms > 0 else ItemState.WAITING,
        )

    async def fetch_next(self, queue: str, token: str, lock_ms: int) -> QueueItem | None:
        item_id = await self._fetch(
            keys=[
                self._key(queue, "wait"),
                self._key(queue, "active"),
                self._key(queue, "delayed"),
                self._key(queue, "paused"),
            ],
            args=[now_ms(), lock_ms, token, self._job_prefix(queue), PRIORITY_FACTOR],
        )
        if not item_id:
            return None
        return await self._load(queue, str(item_id), ItemState.ACTIVE)

    async def extend_lock(self, queue: str, item_id: str, token: str, lock_ms: int) -> bool:
        extended = await self._extend(
            keys=[self._key(queue, "active")],
            args=[item_id, token, now_ms() + lock_ms, self._job_prefix(queue)],
        )
        return bool(extended)

    async def complete(self, item: QueueItem, token: str, result: Any = None) -> bool:
        settled = await self._complete(
            keys=[self._key(item.queue, "active"), self._key(item.queue, "completed")],
            args=[
                item.id,
                token,
                now_ms(),
                json.dumps(result),
                item.opts.remove_on_complete,
                self._job_prefix(item.queue),
            ],
        )
        return bool(settled)

    async def fail(
        self,
        item: QueueItem,
        token: str,
        error: str,
        *,
        attempts_made: int,
        retry_delay_ms: int | None,
    ) -> bool:
        settled = await self._fail(
            keys=[
                self._key(item.queue, "active"),
                self._key(item.queue, "wait"),
                self._key(item.queue, "delayed"),
                self._key(item.queue, "failed"),
            ],
            args=[
                item.id,
                token,
                now_ms(),
                error,
                attempts_made,
                -1 if retry_delay_ms is None else retry_delay_ms,
                item.opts.remove_on_fail,
                self._job_prefix(item.queue),
                PRIORITY_FACTOR,
            ],
        )
        return bool(settled)

    async def update_data(self, queue: str, item_id: str, data: dict[str, Any]) -> bool:
        updated = await self._update_data(
            keys=[self._job_prefix(queue) + item_id],
            args=[json.dumps(data)],
        )
        return bool(updated)

    async def get_item(self, queue: str, item_id: str) -> QueueItem | None:
        async with self._client.pipeline(transaction=False) as pipe:
            for state in ItemState:
                pipe.zscore(self._state_key(queue, state), item_id)
            scores = await pipe.execute()
        state = next(
            (state for state, score in zip(ItemState, scores) if score is not None),
            None,
        )
        return await self._load(queue, item_id, state)

    async def recover_stalled(self, queue: str) -> list[str]:
        stalled = await self._recover(
            keys=[self._key(queue, "active"), self._key(queue, "wait")],
            args=[now_ms(), self._job_prefix(queue), PRIORITY_FACTOR],
        )
        return [str(item_id) for item_id in stalled]

    async def counts(self, queue: str) -> QueueCounts:
        async with self._client.pipeline(transaction=False) as pipe:
            pipe.zcard(self._key(queue, "wait"))
            pipe.zcard(self._key(queue, "active"))
            pipe.zcard(self._key(queue, "completed"))
            pipe.zcard(self._key(queue, "failed"))
            pipe.zcard(self._key(queue, "delayed"))
            pipe.exists(self._key(queue, "paused"))
            waiting, active, completed, failed, delayed, paused = await pipe.execute()
        return QueueCounts(
            waiting=waiting,
            active=active,
            completed=completed,
            failed=failed,
            delayed=delayed,
            paused=bool(paused),
        )

    async def list_items(
        self,
        queue: str,
        state: ItemState,
        start: int = 0,
        end: int = 49,
    ) -> list[QueueItem]:
        key = self._state_key(queue, state)
        if state in (ItemState.COMPLETED, ItemState.FAILED):
            ids = await self._client.zrevrange(key, start, end)
        else:
            ids = await self._client.zrange(key, start, end)

        async with self._client.pipeline(transaction=False) as pipe:
            for item_id in ids:
                pipe.hgetall(self._job_prefix(queue) + item_id)
            rows = await pipe.execute()

        return [
            self._item_from_hash(queue, item_id, fields, state)
            for item_id, fields in zip(ids, rows)
            if fields
        ]

    async def pause(self, queue: str) -> None:
        await self._client.set(self._key(queue, "paused"), "1")

    async def resume(self, queue: str) -> None:
        await self._client.delete(self._key(queue, "paused"))

    async def is_paused(self, queue: str) -> bool:
        return bool(await self._client.exists(self._key(queue, "paused")))

    async def retry_item(self, queue: str, item_id: str) -> bool:
        outcome = await self._retry(
            keys=[self._key(queue, "failed"), self._key(queue, "wait")],
            args=[item_id, self._job_prefix(queue), PRIORITY_FACTOR],
        )
        if outcome == -1:
            raise ItemStateError(f"Item {queue}:{item_id} is not failed")
        return outcome == 1

    async def remove_item(self, queue: str, item_id: str) -> bool:
        outcome = await self._remove(
            keys=[
                self._key(queue, "wait"),
                self._key(queue, "active"),
                self._key(queue, "delayed"),
                self._key(queue, "completed"),
                self._key(queue, "failed"),
            ],
            args=[item_id, self._job_prefix(queue)],
        )
        if outcome == -1:
            raise ItemStateError(f"Item {queue}:{item_id} is active and cannot be removed")
        return outcome == 1

    async def clean(self, queue: str, grace_ms: int, state: ItemState, limit: int) -> list[str]:
        if state not in (ItemState.COMPLETED, ItemState.FAILED):
            raise ValueError(f"Cannot clean items in state {state}")
        removed = await self._clean(
            keys=[self._state_key(queue, state)],
            args=[now_ms() - grace_ms, limit, self._job_prefix(queue)],
        )
        if removed:
            logger.info(
                "Cleaned queue items",
                extra={"queue": queue, "state": state.value, "count": len(removed)},
            )
        return [str(item_id) for item_id in removed]
