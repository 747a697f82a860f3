"""Process-local bound on the number of batches executing concurrently."""

import asyncio

from crmsync.core.logging import logger


class ConcurrencyGate:
    """Counting semaphore shared by every batch submission in this process.

    The gate is owned by whoever builds the processor and injected explicitly.
    It does not coordinate across instances: system-wide concurrency is the
    per-instance limit times the number of instances.

    Usage:
        async with gate:
            await policy.execute(...)
    """

    def __init__(self, max_concurrent: int = 4):
        """Initialize the gate.

        Args:
            max_concurrent: Number of slots; values below 1 become 1
        """
        self.max_concurrent = max(1, max_concurrent)
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        self._in_flight = 0
        logger.debug(f"ConcurrencyGate initialized: {self.max_concurrent} slots")

    @property
    def in_flight(self) -> int:
        """Number of slots currently held."""
        return self._in_flight

    @property
    def available(self) -> int:
        """Number of free slots."""
        return self.max_concurrent - self._in_flight

    async def acquire(self) -> None:
        """Wait for a free slot. Pair every call with exactly one release()."""
        await self._semaphore.acquire()
        self._in_flight += 1

    def release(self) -> None:
        """Return a slot taken with acquire()."""
        if self._in_flight <= 0:
            raise RuntimeError("ConcurrencyGate.release() called without a matching acquire()")
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.release()
