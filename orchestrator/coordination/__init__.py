"""
Coordination store module.
Contains the store interface and its Redis and in-memory implementations.
"""

from orchestrator.coordination.base import CoordinationStore, MemoryInfo
from orchestrator.coordination.memory import MemoryCoordinationStore
from orchestrator.coordination.redis_store import (
    RedisCoordinationStore,
    create_redis_connection,
)

__all__ = [
    "CoordinationStore",
    "MemoryInfo",
    "MemoryCoordinationStore",
    "RedisCoordinationStore",
    "create_redis_connection",
]
