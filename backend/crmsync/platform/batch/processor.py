"""Entry point of the batch core: validate, plan, gate, retry."""

import asyncio
import time
from typing import Iterable, List, Optional, Sequence

import httpx

from crmsync.core.concurrency_gate import ConcurrencyGate
from crmsync.core.exceptions import BatchExecutionError
from crmsync.core.identifier_cache_service import IdentifierCacheService
from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.auth.token_provider import TokenProvider
from crmsync.platform.batch.planner import MAX_BATCH_OPERATIONS, clamp_batch_size, plan_batches
from crmsync.platform.batch.retry_policy import BatchRetryPolicy
from crmsync.platform.batch.types import (
    BatchExecutionResult,
    IdentifierLookup,
    Operation,
    RoutingRules,
)
from crmsync.platform.crm.batch_client import CrmBatchClient


class BatchProcessor:
    """Submits operations to the CRM as gated, retried, atomic batches.

    One processor is shared by every caller in the process so that the gate
    bounds the number of batches in flight across all of them.
    """

    def __init__(
        self,
        batch_client: CrmBatchClient,
        retry_policy: BatchRetryPolicy,
        gate: ConcurrencyGate,
        token_provider: TokenProvider,
        identifier_cache: Optional[IdentifierCacheService] = None,
        routing_rules: Optional[RoutingRules] = None,
        max_operations: int = MAX_BATCH_OPERATIONS,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the processor.

        Args:
            batch_client: Sends one $batch request per attempt
            retry_policy: Drives attempts of a single batch
            gate: Process-wide bound on concurrent batches
            token_provider: Supplies bearer tokens
            identifier_cache: Refreshed with new identifiers after a successful run
            routing_rules: Default alternate-key configuration
            max_operations: Batch size limit (clamped to 10..1000)
            logger: Optional contextual logger
        """
        self.batch_client = batch_client
        self.retry_policy = retry_policy
        self.gate = gate
        self.token_provider = token_provider
        self.identifier_cache = identifier_cache
        self.routing_rules = routing_rules or RoutingRules()
        self.max_operations = clamp_batch_size(max_operations)
        self.logger = logger or default_logger.with_context(component="batch_processor")

    async def process(
        self,
        operations: Sequence[Operation],
        routing_rules: Optional[RoutingRules] = None,
        logger: Optional[ContextualLogger] = None,
        cancel_event: Optional[asyncio.Event] = None,
        refresh: Iterable[IdentifierLookup] = (),
    ) -> List[BatchExecutionResult]:
        """Execute operations as one or more atomic batches.

        Args:
            operations: Operations in submission order
            routing_rules: Overrides the processor's alternate-key configuration
            logger: Optional logger carrying the caller's context
            cancel_event: Stops retries before the next attempt or during a sleep
            refresh: Identifier lookups re-queried once every batch succeeded

        Returns:
            One successful BatchExecutionResult per batch

        Raises:
            MissingAlternateKeyError: Before any network call
            BatchExecutionError: When a batch ends in a terminal failure; later
                batches are not submitted
            BatchCancelledError: If cancel_event was set
        """
        log = logger or self.logger
        rules = routing_rules or self.routing_rules
        if not operations:
            return []

        self.batch_client.builder_for(rules, log).validate(operations)
        batches = plan_batches(operations, self.max_operations, logger=log)
        log.info(f"Processing {len(operations)} operations in {len(batches)} batch(es)")

        async def send(batch_operations: Sequence[Operation]) -> BatchExecutionResult:
            token = await self.token_provider.get_access_token()
            return await self.batch_client.execute_batch(batch_operations, token, rules, log)

        results: List[BatchExecutionResult] = []
        for number, batch in enumerate(batches, start=1):
            batch_log = log.with_context(batch=f"{number}/{len(batches)}")
            start = time.monotonic()
            async with self.gate:
                result = await self.retry_policy.execute(
                    send, batch.operations, logger=batch_log, cancel_event=cancel_event
                )
            if not result.is_complete_success:
                raise BatchExecutionError(result)
            batch_log.debug(f"Batch completed in {time.monotonic() - start:.2f}s")
            results.append(result)

        await self._refresh_identifiers(refresh, log)
        return results

    async def _refresh_identifiers(
        self, lookups: Iterable[IdentifierLookup], log: ContextualLogger
    ) -> None:
        lookups = [lookup for lookup in lookups if lookup.keys]
        if not lookups or self.identifier_cache is None:
            return
        token = await self.token_provider.get_access_token()
        for lookup in lookups:
            try:
                await self.identifier_cache.refresh(lookup, token, logger=log)
            except httpx.HTTPError as e:
                # Batches are already committed here.
                log.warning(f"Identifier refresh for {lookup.collection} failed: {e}")
