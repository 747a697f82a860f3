"""Write-side client: sends one $batch request per attempt."""

from typing import Optional, Sequence

import httpx

from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.batch.request_builder import BatchRequestBuilder
from crmsync.platform.batch.response_interpreter import interpret_batch_response
from crmsync.platform.batch.types import BatchExecutionResult, Operation, RoutingRules
from crmsync.platform.crm.odata import ODATA_HEADERS


class CrmBatchClient:
    """Posts multipart $batch requests and interprets their responses.

    Transport errors are not converted into results: they propagate so the
    retry policy can treat them as transient.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        web_api_url: str,
        batch_debug: bool = False,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the batch client.

        Args:
            http_client: Shared httpx.AsyncClient
            web_api_url: Root of the web API (.../api/data/v9.2)
            batch_debug: Log every sub-request
            logger: Optional contextual logger
        """
        self._http = http_client
        self.web_api_url = web_api_url.rstrip("/")
        self.batch_debug = batch_debug
        self.logger = logger or default_logger.with_context(component="crm_batch_client")

    def builder_for(
        self, routing_rules: RoutingRules, logger: Optional[ContextualLogger] = None
    ) -> BatchRequestBuilder:
        return BatchRequestBuilder(
            self.web_api_url,
            routing_rules,
            debug=self.batch_debug,
            logger=logger or self.logger,
        )

    async def execute_batch(
        self,
        operations: Sequence[Operation],
        token: str,
        routing_rules: RoutingRules,
        logger: Optional[ContextualLogger] = None,
    ) -> BatchExecutionResult:
        """Send the operations as one changeset.

        Args:
            operations: Operations in submission order
            token: Bearer token
            routing_rules: Alternate-key configuration
            logger: Optional logger carrying the caller's context

        Returns:
            BatchExecutionResult of this single attempt

        Raises:
            MissingAlternateKeyError: Before any network call
            httpx.HTTPError: On transport failure
        """
        log = logger or self.logger
        if not operations:
            return BatchExecutionResult.empty_success()

        request = self.builder_for(routing_rules, log).build(operations)
        headers = {
            **ODATA_HEADERS,
            "Authorization": f"Bearer {token}",
            "Content-Type": request.content_type,
        }

        try:
            response = await self._http.post(
                f"{self.web_api_url}/$batch",
                content=request.body.encode("utf-8"),
                headers=headers,
            )
        except httpx.HTTPError as e:
            log.error(f"HTTP error calling $batch: {type(e).__name__}: {e}")
            raise

        return interpret_batch_response(
            response.status_code,
            response.headers,
            response.text,
            len(operations),
            logger=log,
        )
