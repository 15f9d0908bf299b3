"""
Redis-backed coordination store.
"""

import logging
from urllib.parse import urlparse

import redis.asyncio as redis
from redis.exceptions import RedisError

from orchestrator.config import Settings
from orchestrator.coordination.base import CoordinationStore, MemoryInfo, human_bytes
from orchestrator.errors import CoordinationStoreError

logger = logging.getLogger(__name__)

# Read-then-delete in one round trip so a holder whose TTL lapsed can
# never delete a key that somebody else has since acquired.
COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


def create_redis_connection(settings: Settings) -> redis.Redis:
    """
    Create the single Redis client a process shares between broker,
    locks and dedup keys.

    rediss:// URLs are accepted with relaxed certificate checks, matching
    managed Redis offerings that terminate TLS with self-signed certs.
    """
    options: dict = {
        "decode_responses": True,
        "health_check_interval": 30,
    }
    if urlparse(settings.redis_url).scheme == "rediss":
        options["ssl_cert_reqs"] = "none"

    client = redis.from_url(settings.redis_url, **options)
    logger.info(
        "Coordination store client created",
        extra={"host": urlparse(settings.redis_url).hostname},
    )
    return client


class RedisCoordinationStore(CoordinationStore):
    """
    Coordination store over an injected redis.asyncio client.

    The store owns the client: close() closes it.
    """

    def __init__(self, client: redis.Redis):
        self._client = client
        self._compare_and_delete = client.register_script(COMPARE_AND_DELETE_SCRIPT)

    @property
    def client(self) -> redis.Redis:
        return self._client

    async def set_if_absent(self, key: str, value: str, ttl_ms: int | None = None) -> bool:
        try:
            return bool(await self._client.set(key, value, nx=True, px=ttl_ms))
        except RedisError as e:
            raise CoordinationStoreError(f"SET NX failed for {key}: {e}") from e

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        try:
            deleted = await self._compare_and_delete(keys=[key], args=[expected])
        except RedisError as e:
            raise CoordinationStoreError(f"Compare-and-delete failed for {key}: {e}") from e
        return bool(deleted)

    async def get(self, key: str) -> str | None:
        try:
            return await self._client.get(key)
        except RedisError as e:
            raise CoordinationStoreError(f"GET failed for {key}: {e}") from e

    async def set(self, key: str, value: str, ttl_ms: int | None = None) -> None:
        try:
            await self._client.set(key, value, px=ttl_ms)
        except RedisError as e:
            raise CoordinationStoreError(f"SET failed for {key}: {e}") from e

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self._client.delete(key))
        except RedisError as e:
            raise CoordinationStoreError(f"DEL failed for {key}: {e}") from e

    async def exists(self, key: str) -> bool:
        try:
            return bool(await self._client.exists(key))
        except RedisError as e:
            raise CoordinationStoreError(f"EXISTS failed for {key}: {e}") from e

    async def memory_info(self) -> MemoryInfo:
        try:
            info = await self._client.info("memory")
        except RedisError as e:
            raise CoordinationStoreError(f"INFO memory failed: {e}") from e

        used = int(info.get("used_memory", 0))
        maximum = int(info.get("maxmemory", 0))
        return MemoryInfo(
            used_bytes=used,
            max_bytes=maximum,
            used_human=str(info.get("used_memory_human", human_bytes(used))),
            max_human=str(info.get("maxmemory_human", human_bytes(maximum))),
        )

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError as e:
            raise CoordinationStoreError(f"PING failed: {e}") from e

    async def close(self) -> None:
        await self._client.aclose()
        logger.info("Coordination store connection closed")
