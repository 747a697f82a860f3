"""Module for the batch factory that wires the processor from settings."""

from typing import Optional

import httpx

from crmsync.core.circuit_breaker_service import CircuitBreakerService
from crmsync.core.concurrency_gate import ConcurrencyGate
from crmsync.core.config import Settings
from crmsync.core.identifier_cache_service import IdentifierCacheService
from crmsync.core.logging import ContextualLogger, logger
from crmsync.core.redis_client import RedisClient
from crmsync.platform.auth.token_provider import ClientCredentialsTokenProvider, TokenProvider
from crmsync.platform.batch.processor import BatchProcessor
from crmsync.platform.batch.retry_policy import BatchRetryPolicy
from crmsync.platform.batch.types import RoutingRules
from crmsync.platform.crm.batch_client import CrmBatchClient
from crmsync.platform.crm.query_client import CrmQueryClient


class BatchFactory:
    """Factory for the batch processor and its collaborators."""

    @classmethod
    def create_http_client(cls, config: Settings) -> httpx.AsyncClient:
        """Create the HTTP client shared by every CRM call."""
        return httpx.AsyncClient(timeout=httpx.Timeout(config.HTTP_TIMEOUT_SECONDS))

    @classmethod
    def create_token_provider(
        cls, config: Settings, http_client: httpx.AsyncClient
    ) -> ClientCredentialsTokenProvider:
        """Create a client-credentials token provider for the configured tenant."""
        return ClientCredentialsTokenProvider(
            http_client,
            tenant_id=config.CRM_TENANT_ID,
            client_id=config.CRM_CLIENT_ID,
            client_secret=config.CRM_CLIENT_SECRET,
            resource_url=config.CRM_RESOURCE_URL,
            authority_url=config.CRM_AUTHORITY_URL,
        )

    @classmethod
    def create_processor(
        cls,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        redis: Optional[RedisClient] = None,
        token_provider: Optional[TokenProvider] = None,
        gate: Optional[ConcurrencyGate] = None,
        log: Optional[ContextualLogger] = None,
    ) -> BatchProcessor:
        """Create a processor with every collaborator built from settings.

        Build one processor per process and share it: the concurrency gate only
        bounds batches submitted through the same instance.

        Args:
            config: Settings (default: the process-wide settings)
            http_client: Shared httpx client (default: new client with the configured timeout)
            redis: Redis client (default: the process-wide client)
            token_provider: Token source (default: client credentials from settings)
            gate: Concurrency gate (default: MAX_CONCURRENT_BATCHES slots)
            log: Base logger for every component

        Returns:
            A ready BatchProcessor
        """
        if config is None:
            from crmsync.core.config import settings as config
        if redis is None:
            from crmsync.core.redis_client import redis_client as redis

        log = log or logger
        http_client = http_client or cls.create_http_client(config)
        token_provider = token_provider or cls.create_token_provider(config, http_client)
        gate = gate or ConcurrencyGate(config.MAX_CONCURRENT_BATCHES)

        circuit_breaker = CircuitBreakerService(
            redis,
            key=config.CIRCUIT_BREAKER_KEY,
            min_pause_seconds=config.CIRCUIT_BREAKER_MIN_PAUSE_SECONDS,
            max_pause_seconds=config.CIRCUIT_BREAKER_MAX_PAUSE_SECONDS,
            logger=log.with_context(component="circuit_breaker"),
        )
        retry_policy = BatchRetryPolicy(
            circuit_breaker,
            max_attempts=config.BATCH_MAX_ATTEMPTS,
            initial_backoff_seconds=config.BATCH_INITIAL_BACKOFF_SECONDS,
            max_backoff_seconds=config.BATCH_MAX_BACKOFF_SECONDS,
            partial_failure_delay_seconds=config.PARTIAL_FAILURE_RETRY_DELAY_SECONDS,
            jitter_max_seconds=config.RETRY_JITTER_MAX_SECONDS,
            logger=log.with_context(component="batch_retry_policy"),
        )
        batch_client = CrmBatchClient(
            http_client,
            config.web_api_url,
            batch_debug=config.BATCH_DEBUG,
            logger=log.with_context(component="crm_batch_client"),
        )
        identifier_cache = IdentifierCacheService(
            redis,
            CrmQueryClient(http_client, logger=log.with_context(component="crm_query_client")),
            config.web_api_url,
            ttl_seconds=config.identifier_cache_ttl_seconds,
            cache_debug=config.CACHE_DEBUG,
            logger=log.with_context(component="identifier_cache"),
        )

        logger.debug(
            f"Batch processor configured: max_operations={config.BATCH_MAX_OPERATIONS}, "
            f"max_concurrent={gate.max_concurrent}, max_attempts={config.BATCH_MAX_ATTEMPTS}"
        )

        return BatchProcessor(
            batch_client=batch_client,
            retry_policy=retry_policy,
            gate=gate,
            token_provider=token_provider,
            identifier_cache=identifier_cache,
            routing_rules=RoutingRules(dict(config.ALTERNATE_KEYS)),
            max_operations=config.BATCH_MAX_OPERATIONS,
            logger=log.with_context(component="batch_processor"),
        )
