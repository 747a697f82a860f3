"""Read-side client for the CRM web API."""

from typing import Any, Dict, Optional

import httpx

from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.platform.crm.odata import ODATA_HEADERS


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bool):
        return str(value).lower()
    return str(value)


class CrmQueryClient:
    """Executes OData collection queries and maps results to key/value pairs."""

    # Upper bound on @odata.nextLink pages followed for a single query.
    MAX_PAGES = 100

    def __init__(self, http_client: httpx.AsyncClient, logger: Optional[ContextualLogger] = None):
        """Initialize the query client.

        Args:
            http_client: Shared httpx.AsyncClient
            logger: Optional contextual logger
        """
        self._http = http_client
        self.logger = logger or default_logger.with_context(component="crm_query_client")

    async def execute_query(
        self, url: str, token: str, logger: Optional[ContextualLogger] = None
    ) -> Dict[str, Any]:
        """GET a query URL and return the decoded JSON document.

        Raises:
            httpx.HTTPError: On transport errors or non-2xx responses
        """
        log = logger or self.logger
        headers = {**ODATA_HEADERS, "Authorization": f"Bearer {token}"}
        try:
            response = await self._http.get(url, headers=headers)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            log.error(f"Query failed for {url}: {e}")
            raise

    async def bulk_query_and_map(
        self,
        url: str,
        key_field: str,
        value_field: str,
        token: str,
        logger: Optional[ContextualLogger] = None,
    ) -> Dict[str, str]:
        """Run a query and map ``key_field`` to ``value_field`` for every row.

        Follows ``@odata.nextLink`` so large result sets are complete. Rows missing
        either field are skipped.

        Args:
            url: Full query URL including $select/$filter
            key_field: Column used as the mapping key
            value_field: Column used as the mapping value
            token: Bearer token
            logger: Optional logger carrying the caller's context

        Returns:
            Mapping of key -> value, both as strings
        """
        result: Dict[str, str] = {}
        next_url: Optional[str] = url
        pages = 0

        while next_url and pages < self.MAX_PAGES:
            document = await self.execute_query(next_url, token, logger)
            for row in document.get("value", []):
                key = _as_text(row.get(key_field))
                value = _as_text(row.get(value_field))
                if key and value:
                    result[key] = value
            next_url = document.get("@odata.nextLink")
            pages += 1

        if next_url:
            (logger or self.logger).warning(
                f"Stopped following @odata.nextLink after {self.MAX_PAGES} pages for {url}"
            )
        return result
