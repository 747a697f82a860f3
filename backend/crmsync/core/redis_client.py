"""Redis client for the distributed cache tier.

Wraps a single redis.asyncio connection pool and adds the atomic primitives the
sync core relies on across process instances: SET NX and compare-and-delete.
"""

import uuid
from typing import Optional, Tuple

import redis.asyncio as redis

from crmsync.core.config import Settings

# Deletes KEYS[1] only while it still holds ARGV[1].
_COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
else
    return 0
end
"""


class RedisClient:
    """Lazily-connected async Redis client shared by cache and circuit breaker."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[redis.Redis] = None):
        """Initialize the client.

        Args:
            config: Settings providing connection parameters
            client: Pre-built client (tests, custom pools)
        """
        self._config = config
        self._client = client

    @property
    def client(self) -> redis.Redis:
        """Return the underlying redis.asyncio client, creating it on first use."""
        if self._client is None:
            if self._config is None:
                from crmsync.core.config import settings

                self._config = settings
            self._client = redis.Redis(
                host=self._config.REDIS_HOST,
                port=self._config.REDIS_PORT,
                password=self._config.REDIS_PASSWORD,
                ssl=self._config.REDIS_SSL,
                db=self._config.REDIS_DB,
                decode_responses=True,
                socket_connect_timeout=15,
                socket_timeout=15,
                socket_keepalive=True,
                retry_on_timeout=True,
            )
        return self._client

    async def set_if_not_exists(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Atomically set a key only when it does not exist yet.

        Args:
            key: Redis key
            value: Value to store
            ttl_seconds: Expiry of the key

        Returns:
            True if the key was written, False if it already existed
        """
        result = await self.client.set(key, value, px=max(1, int(ttl_seconds * 1000)), nx=True)
        return bool(result)

    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Atomically delete a key only while it holds the expected value.

        Args:
            key: Redis key
            expected: Value the key must still hold

        Returns:
            True if the key was deleted
        """
        deleted = await self.client.eval(_COMPARE_AND_DELETE_SCRIPT, 1, key, expected)
        return bool(deleted)

    async def try_acquire_lock(self, key: str, ttl_seconds: float) -> Tuple[bool, str]:
        """Take a best-effort token lock.

        Args:
            key: Lock key
            ttl_seconds: Lease duration

        Returns:
            Tuple of (acquired, token); the token is needed to release the lock
        """
        token = str(uuid.uuid4())
        acquired = await self.set_if_not_exists(key, token, ttl_seconds)
        return acquired, token

    async def release_lock(self, key: str, token: str) -> bool:
        """Release a lock previously taken with try_acquire_lock."""
        return await self.compare_and_delete(key, token)

    async def close(self) -> None:
        """Close the connection pool if one was opened."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


redis_client = RedisClient()
