"""Key-value stores standing in for browser local and session storage.

Two scopes are used by the guest flow:
    durable  guest_id_{fingerprint}  -> resolved guest id (survives visits)
    session  guest_session_id        -> per-session token

Both are accessed through the small async ``KeyValueStore`` interface so
tests can substitute an in-memory store for Redis.
"""

import logging
from typing import Any, Protocol

import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    """Async string key-value store."""

    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str) -> None: ...

    async def remove(self, key: str) -> None: ...


class MemoryKeyValueStore:
    """Process-local store. Used for session scope and in tests."""

    def __init__(self, initial: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(initial or {})

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def remove(self, key: str) -> None:
        self.data.pop(key, None)


class RedisKeyValueStore:
    """Redis-backed durable store.

    Key scheme:
        {namespace}:{key}

    Redis errors (timeouts included) are logged and treated as a cache miss;
    losing the cache only costs a full resolve on the next visit.
    """

    def __init__(self, redis_client: Any, namespace: str = "guestwatch", ttl: int | None = None):
        """Initialize store.

        Args:
            redis_client: ``redis.asyncio.Redis`` client
            namespace: Key prefix
            ttl: Optional expiry in seconds; None keeps keys indefinitely
        """
        self.redis = redis_client
        self.namespace = namespace
        self.ttl = ttl

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    async def get(self, key: str) -> str | None:
        try:
            value = await self.redis.get(self._key(key))
        except Exception as e:
            logger.warning(f"Store get failed for {key}: {e}")
            return None
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    async def set(self, key: str, value: str) -> None:
        try:
            await self.redis.set(self._key(key), value, ex=self.ttl)
        except Exception as e:
            logger.warning(f"Store set failed for {key}: {e}")

    async def remove(self, key: str) -> None:
        try:
            await self.redis.delete(self._key(key))
        except Exception as e:
            logger.warning(f"Store remove failed for {key}: {e}")

    async def close(self) -> None:
        await self.redis.close()


def guest_cache_key(fingerprint: str) -> str:
    """Durable-store key caching the guest id for a fingerprint."""
    return f"guest_id_{fingerprint}"


def build_durable_store(backend: str, redis_url: str, timeout: float = 2.0) -> KeyValueStore:
    """Create the durable store selected by configuration.

    Args:
        backend: ``memory`` or ``redis``
        redis_url: Connection URL used when backend is ``redis``
        timeout: Connect and per-command socket timeout in seconds

    Raises:
        ValueError: If the backend name is unknown
    """
    if backend == "memory":
        return MemoryKeyValueStore()
    if backend == "redis":
        client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return RedisKeyValueStore(client)
    raise ValueError(f"Unknown guest cache backend: {backend}")
