"""Circuit breaker shared across process instances through Redis.

When the CRM signals overload, one instance publishes an "open until" timestamp.
Every instance reads it before contacting the CRM and pauses until it expires,
so a throttled store is not hammered by the other instances.
"""

import asyncio
import math
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.core.redis_client import RedisClient

Sleep = Callable[[float], Awaitable[None]]
Clock = Callable[[], datetime]

# Longest pause the breaker will publish.
MAX_ADVISORY_PAUSE_SECONDS = 24 * 60 * 60


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CircuitBreakerService:
    """Redis-backed global pause gate.

    State is a single key holding an ISO-8601 UTC timestamp, written with an
    expiry equal to the pause. Concurrent writers race; the last writer wins,
    which only moves the end of a cool-down window.
    """

    DEFAULT_KEY = "crm:circuitbreaker"

    def __init__(
        self,
        redis: RedisClient,
        key: str = DEFAULT_KEY,
        min_pause_seconds: float = 5.0,
        max_pause_seconds: float = 60.0,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = _utcnow,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the circuit breaker.

        Args:
            redis: Shared Redis client
            key: Redis key of the open-until timestamp
            min_pause_seconds: Pause used when no positive Retry-After was given
            max_pause_seconds: Cap applied when no Retry-After was given
            sleep: Awaitable sleep function
            clock: Returns the current UTC time
            logger: Optional contextual logger
        """
        self._redis = redis
        self.key = key
        self.min_pause_seconds = min_pause_seconds
        self.max_pause_seconds = max_pause_seconds
        self._sleep = sleep
        self._clock = clock
        self.logger = logger or default_logger.with_context(component="circuit_breaker")

    async def get_open_until(self) -> Optional[datetime]:
        """Read the shared open-until timestamp.

        Returns:
            Timestamp, or None if the breaker is closed or the value is unreadable
        """
        raw = await self._redis.client.get(self.key)
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            until = datetime.fromisoformat(raw)
        except ValueError:
            self.logger.warning(f"[CircuitBreaker] Ignoring unreadable value {raw!r}")
            return None
        if until.tzinfo is None:
            until = until.replace(tzinfo=timezone.utc)
        return until

    async def wait_if_active(self, logger: Optional[ContextualLogger] = None) -> float:
        """Block the caller while the breaker is open.

        Args:
            logger: Optional logger carrying the caller's context

        Returns:
            Seconds waited (0 when the breaker was closed)
        """
        log = logger or self.logger
        until = await self.get_open_until()
        if until is None:
            return 0.0

        remaining = (until - self._clock()).total_seconds()
        if remaining <= 0:
            return 0.0

        log.warning(
            f"[CircuitBreaker] Global pause until {until.isoformat()} ({int(remaining)}s)"
        )
        await self._sleep(remaining)
        return remaining

    def compute_pause(self, retry_after: Optional[float]) -> float:
        """Pause duration for a throttled response.

        A positive Retry-After is used as-is. Otherwise the minimum pause applies,
        capped at the maximum when the store gave no hint at all. A hint that is
        not a finite number counts as no hint; huge hints are clamped to a day.
        """
        if retry_after is not None and not math.isfinite(retry_after):
            retry_after = None

        if retry_after is not None and retry_after > 0:
            pause = min(retry_after, MAX_ADVISORY_PAUSE_SECONDS)
        else:
            pause = self.min_pause_seconds

        if retry_after is None and pause > self.max_pause_seconds:
            pause = self.max_pause_seconds
        return pause

    async def open(
        self, retry_after: Optional[float], logger: Optional[ContextualLogger] = None
    ) -> float:
        """Publish a global pause after a throttled response.

        Args:
            retry_after: Advisory delay from the CRM in seconds, if any
            logger: Optional logger carrying the caller's context

        Returns:
            The pause that was published, in seconds
        """
        log = logger or self.logger
        pause = self.compute_pause(retry_after)
        until = self._clock() + timedelta(seconds=pause)

        await self._redis.client.set(self.key, until.isoformat(), px=max(1, int(pause * 1000)))

        log.warning(
            f"[CircuitBreaker] Opened: global pause until {until.isoformat()} "
            f"({int(pause)}s, retry_after={retry_after})"
        )
        return pause

    async def reset(self) -> None:
        """Close the breaker immediately."""
        await self._redis.client.delete(self.key)
