"""Retry policy for batch submissions.

Drives repeated attempts of one batch with tenacity:

- throttled      -> open the shared circuit breaker, sleep backoff + jitter,
                    double the backoff (capped), replay the same operations
- partial        -> the changeset was rolled back; replay the whole batch
                    after a short fixed delay
- permanent      -> non-2xx without throttling signature or per-op detail; stop
- exception      -> transient; sleep backoff + jitter and retry
- success        -> stop

On exhaustion the last observed result is returned, or a placeholder if no
attempt ever completed.
"""

import asyncio
import random
from typing import Awaitable, Callable, Optional, Sequence

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    retry_if_result,
    stop_after_attempt,
)

from crmsync.core.circuit_breaker_service import CircuitBreakerService
from crmsync.core.exceptions import BatchCancelledError, MissingAlternateKeyError
from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.batch.types import BatchExecutionResult, Operation

ExecuteBatch = Callable[[Sequence[Operation]], Awaitable[BatchExecutionResult]]
Sleep = Callable[[float], Awaitable[None]]


def should_retry_on_exception(exception: BaseException) -> bool:
    """Exceptions during an attempt are transient, except configuration errors and cancellation.

    Args:
        exception: Exception raised by the attempt

    Returns:
        True if the batch should be attempted again
    """
    if isinstance(exception, (MissingAlternateKeyError, BatchCancelledError)):
        return False
    return isinstance(exception, Exception)


def should_replay(result: BatchExecutionResult) -> bool:
    """Throttled and partially failed batches are replayed; everything else is terminal."""
    if result.is_complete_success:
        return False
    return result.is_throttled or result.has_failed_indices


class BackoffSchedule:
    """Tenacity wait strategy with per-submission backoff state.

    Throttling and exceptions consume the exponential schedule
    (``backoff + uniform(0, jitter)``, then ``backoff = min(backoff * 2, cap)``);
    partial failures wait a fixed short delay and leave the schedule untouched.
    """

    def __init__(
        self,
        initial_seconds: float,
        max_seconds: float,
        partial_failure_delay_seconds: float,
        jitter_max_seconds: float,
        rng: random.Random,
    ):
        self.backoff = initial_seconds
        self.max_seconds = max_seconds
        self.partial_failure_delay_seconds = partial_failure_delay_seconds
        self.jitter_max_seconds = jitter_max_seconds
        self._rng = rng

    def _exponential(self) -> float:
        delay = self.backoff + self._rng.uniform(0, self.jitter_max_seconds)
        self.backoff = min(self.backoff * 2, self.max_seconds)
        return delay

    def __call__(self, retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        if outcome is None or outcome.failed:
            return self._exponential()
        result: BatchExecutionResult = outcome.result()
        if result.is_throttled:
            return self._exponential()
        return self.partial_failure_delay_seconds


class BatchRetryPolicy:
    """Exponential backoff retry policy consulting the shared circuit breaker."""

    def __init__(
        self,
        circuit_breaker: CircuitBreakerService,
        max_attempts: int = 5,
        initial_backoff_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        partial_failure_delay_seconds: float = 0.5,
        jitter_max_seconds: float = 0.5,
        sleep: Sleep = asyncio.sleep,
        rng: Optional[random.Random] = None,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the retry policy.

        Args:
            circuit_breaker: Shared breaker consulted before every attempt
            max_attempts: Attempts per submission (min 1)
            initial_backoff_seconds: First exponential backoff interval
            max_backoff_seconds: Backoff cap
            partial_failure_delay_seconds: Delay before replaying a rolled-back batch
            jitter_max_seconds: Upper bound of the random jitter
            sleep: Awaitable sleep used between attempts
            rng: Random source for jitter
            logger: Optional contextual logger
        """
        self.circuit_breaker = circuit_breaker
        self.max_attempts = max(1, max_attempts)
        self.initial_backoff_seconds = initial_backoff_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.partial_failure_delay_seconds = partial_failure_delay_seconds
        self.jitter_max_seconds = jitter_max_seconds
        self._sleep = sleep
        self._rng = rng or random.Random()
        self.logger = logger or default_logger.with_context(component="batch_retry_policy")

    async def _sleep_unless_cancelled(
        self, seconds: float, cancel_event: Optional[asyncio.Event]
    ) -> None:
        if cancel_event is None:
            await self._sleep(seconds)
            return
        if cancel_event.is_set():
            raise BatchCancelledError("Cancelled before backoff sleep")

        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            sleeper.cancel()
            waiter.cancel()
        if waiter in done:
            raise BatchCancelledError(f"Cancelled during a {seconds:.2f}s backoff sleep")

    async def execute(
        self,
        execute_batch: ExecuteBatch,
        operations: Sequence[Operation],
        logger: Optional[ContextualLogger] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BatchExecutionResult:
        """Execute a batch until it succeeds, fails permanently or attempts run out.

        The same, unmodified operation list is passed to every attempt: a
        changeset is atomic, so a partial failure means nothing was committed.

        Args:
            execute_batch: Sends the operations once and interprets the response
            operations: Operations of the batch
            logger: Optional logger carrying the caller's context
            cancel_event: Set to stop before the next attempt or during a sleep

        Returns:
            Final BatchExecutionResult

        Raises:
            MissingAlternateKeyError: Configuration error, never retried
            BatchCancelledError: If cancel_event was set
        """
        log = logger or self.logger
        batch = tuple(operations)
        schedule = BackoffSchedule(
            initial_seconds=self.initial_backoff_seconds,
            max_seconds=self.max_backoff_seconds,
            partial_failure_delay_seconds=self.partial_failure_delay_seconds,
            jitter_max_seconds=self.jitter_max_seconds,
            rng=self._rng,
        )
        last: list = []
        exhausted: list = []

        async def attempt() -> BatchExecutionResult:
            if cancel_event is not None and cancel_event.is_set():
                raise BatchCancelledError("Cancelled before batch attempt")
            await self.circuit_breaker.wait_if_active(log)

            result = await execute_batch(batch)
            last[:] = [result]

            if result.is_throttled:
                await self.circuit_breaker.open(result.retry_after, log)
            return result

        def before_sleep(retry_state: RetryCallState) -> None:
            delay = retry_state.next_action.sleep if retry_state.next_action else 0
            outcome = retry_state.outcome
            number = retry_state.attempt_number
            if outcome.failed:
                log.warning(
                    f"Batch attempt {number}/{self.max_attempts} raised "
                    f"{type(outcome.exception()).__name__}: {outcome.exception()}. "
                    f"Retrying in {delay:.2f}s"
                )
                return
            result = outcome.result()
            kind = "throttled" if result.is_throttled else "partially failed (rolled back)"
            log.warning(
                f"Batch attempt {number}/{self.max_attempts} {kind}: {result.error_message}. "
                f"Replaying {len(batch)} operations in {delay:.2f}s"
            )

        def on_exhausted(retry_state: RetryCallState) -> BatchExecutionResult:
            exhausted.append(retry_state.attempt_number)
            final = last[0] if last else BatchExecutionResult.max_attempts_reached()
            log.error(
                f"Batch gave up after {retry_state.attempt_number} attempts: "
                f"throttled={final.is_throttled}, error={final.error_message}"
            )
            return final

        async def sleep(seconds: float) -> None:
            await self._sleep_unless_cancelled(seconds, cancel_event)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            retry=retry_if_exception(should_retry_on_exception) | retry_if_result(should_replay),
            wait=schedule,
            sleep=sleep,
            before_sleep=before_sleep,
            retry_error_callback=on_exhausted,
        )

        result = await retrying(attempt)
        if result.is_complete_success:
            log.info(f"Batch of {len(batch)} operations succeeded ({result.success_count} ok)")
        elif not exhausted:
            log.error(f"Batch failed permanently: {result.error_message}")
        return result
