"""Bearer tokens for the CRM web API (OAuth2 client credentials)."""

import asyncio
import time
from typing import Optional, Protocol, runtime_checkable

import httpx

from crmsync.core.exceptions import TokenAcquisitionError
from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger


@runtime_checkable
class TokenProvider(Protocol):
    """Anything able to hand out a bearer token for the CRM."""

    async def get_access_token(self) -> str:
        """Return a valid bearer token."""
        ...


class ClientCredentialsTokenProvider:
    """Client credentials flow with an in-process token cache.

    The token is refreshed once it is within ``refresh_margin_seconds`` of
    expiring. Concurrent callers share a single refresh.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        resource_url: str,
        authority_url: str = "https://login.microsoftonline.com",
        refresh_margin_seconds: float = 60.0,
        logger: Optional[ContextualLogger] = None,
    ):
        self._http = http_client
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.scope = f"{resource_url.rstrip('/')}/.default"
        self.authority_url = authority_url.rstrip("/")
        self.refresh_margin_seconds = refresh_margin_seconds
        self.logger = logger or default_logger.with_context(component="token_provider")

        self._access_token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority_url}/{self.tenant_id}/oauth2/v2.0/token"

    def _is_fresh(self) -> bool:
        return (
            self._access_token is not None
            and time.monotonic() < self._expires_at - self.refresh_margin_seconds
        )

    async def get_access_token(self) -> str:
        """Return the cached token or fetch a new one.

        Raises:
            TokenAcquisitionError: If the identity endpoint refuses the request
        """
        if self._is_fresh():
            return self._access_token

        async with self._lock:
            if self._is_fresh():
                return self._access_token

            response = await self._http.post(
                self.token_endpoint,
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "scope": self.scope,
                },
            )
            if response.status_code != 200:
                raise TokenAcquisitionError(response.status_code, response.text)

            payload = response.json()
            token = payload.get("access_token")
            if not token:
                raise TokenAcquisitionError(response.status_code, "no access_token in response")

            self._access_token = token
            self._expires_at = time.monotonic() + float(payload.get("expires_in", 3600))
            self.logger.debug(f"Fetched CRM access token (expires in {payload.get('expires_in')}s)")
            return token
