"""Unit test conftest for setting up test environment."""

import os

# Set minimal required environment variables before importing any crmsync modules
# This prevents Settings initialization errors during test collection
os.environ.setdefault("CRM_RESOURCE_URL", "https://contoso.crm.example.com")
os.environ.setdefault("CRM_TENANT_ID", "00000000-0000-0000-0000-000000000001")
os.environ.setdefault("CRM_CLIENT_ID", "test-client")
os.environ.setdefault("CRM_CLIENT_SECRET", "test-secret")
os.environ.setdefault("REDIS_HOST", "localhost")
os.environ.setdefault("LOG_LEVEL", "DEBUG")

from typing import Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402

from crmsync.core.redis_client import RedisClient  # noqa: E402


class InMemoryRedis:
    """Minimal async stand-in for redis.asyncio.Redis.

    Several RedisClient instances can share one store to simulate independent
    process instances talking to the same Redis. Expiry is recorded but not
    enforced.
    """

    def __init__(self):
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, float] = {}
        self.calls: List[str] = []

    async def get(self, key: str) -> Optional[str]:
        self.calls.append("get")
        return self.store.get(key)

    async def mget(self, keys: List[str]) -> List[Optional[str]]:
        self.calls.append("mget")
        return [self.store.get(k) for k in keys]

    async def set(self, key, value, ex=None, px=None, nx=False):
        self.calls.append("set")
        if nx and key in self.store:
            return None
        self.store[key] = str(value)
        if ex is not None:
            self.ttls[key] = float(ex)
        elif px is not None:
            self.ttls[key] = px / 1000
        return True

    async def setex(self, key, seconds, value):
        self.calls.append("setex")
        self.store[key] = str(value)
        self.ttls[key] = float(seconds)
        return True

    async def delete(self, *keys) -> int:
        self.calls.append("delete")
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
            self.ttls.pop(key, None)
        return removed

    async def eval(self, script, numkeys, *args):
        # Only the compare-and-delete script is used by RedisClient.
        self.calls.append("eval")
        key, expected = args[0], args[1]
        if self.store.get(key) == expected:
            return await self.delete(key)
        return 0

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    """Create an empty in-memory Redis store."""
    return InMemoryRedis()


@pytest.fixture
def redis(fake_redis):
    """Create a RedisClient backed by the in-memory store."""
    return RedisClient(client=fake_redis)
