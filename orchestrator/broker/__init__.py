"""
Broker module.
Contains queue item types and the Redis and in-memory queue backends.
"""

from orchestrator.broker.base import (
    Backoff,
    BackoffType,
    ItemOptions,
    ItemState,
    QueueBackend,
    QueueCounts,
    QueueItem,
    now_ms,
)
from orchestrator.broker.memory import MemoryQueueBackend
from orchestrator.broker.redis_backend import RedisQueueBackend

__all__ = [
    "Backoff",
    "BackoffType",
    "ItemOptions",
    "ItemState",
    "QueueBackend",
    "QueueCounts",
    "QueueItem",
    "MemoryQueueBackend",
    "RedisQueueBackend",
    "now_ms",
]
