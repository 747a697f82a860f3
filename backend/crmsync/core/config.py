"""Configuration settings for the CRM sync core.

All tunables are read once from the environment (or a .env file) into a single
validated Settings object. Components receive the object by reference; nothing
below this module reads environment variables directly.
"""

from typing import Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Process-wide settings.

    Attributes:
        CRM_RESOURCE_URL (str): Base URL of the CRM environment (no trailing slash).
        CRM_API_VERSION (str): Web API version segment, e.g. "v9.2".
        CRM_TENANT_ID (str): Identity tenant used for client credentials.
        CRM_CLIENT_ID (str): Application (client) ID.
        CRM_CLIENT_SECRET (str): Client secret.
        CRM_AUTHORITY_URL (str): Identity provider base URL.
        HTTP_TIMEOUT_SECONDS (float): Timeout applied to every remote call.
        REDIS_HOST (str): Redis host for the distributed cache tier.
        REDIS_PORT (int): Redis port.
        REDIS_PASSWORD (Optional[str]): Redis password.
        REDIS_SSL (bool): Whether to use TLS for Redis.
        REDIS_DB (int): Redis logical database.
        BATCH_MAX_OPERATIONS (int): Max sub-requests per batch, clamped to 10..1000.
        MAX_CONCURRENT_BATCHES (int): Batches in flight per process (min 1).
        BATCH_MAX_ATTEMPTS (int): Attempts per batch before giving up (min 1).
        BATCH_INITIAL_BACKOFF_SECONDS (int): First backoff interval (min 1).
        BATCH_MAX_BACKOFF_SECONDS (int): Backoff cap (min 1).
        PARTIAL_FAILURE_RETRY_DELAY_SECONDS (float): Delay before replaying a rolled-back batch.
        RETRY_JITTER_MAX_SECONDS (float): Upper bound of the random jitter added to backoff.
        CIRCUIT_BREAKER_KEY (str): Redis key holding the shared open-until timestamp.
        CIRCUIT_BREAKER_MIN_PAUSE_SECONDS (float): Pause used without a Retry-After hint.
        CIRCUIT_BREAKER_MAX_PAUSE_SECONDS (float): Cap applied when no hint was given.
        IDENTIFIER_CACHE_TTL_DAYS (int): Retention of resolved identifiers in Redis.
        ALTERNATE_KEYS (Dict[str, str]): Collection -> alternate-key field.
        BATCH_DEBUG (bool): Log every sub-request of every batch.
        CACHE_DEBUG (bool): Log every cache hit, miss and write.
        LOG_LEVEL (str): Root log level.
    """

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=True)

    CRM_RESOURCE_URL: str
    CRM_API_VERSION: str = "v9.2"
    CRM_TENANT_ID: Optional[str] = None
    CRM_CLIENT_ID: Optional[str] = None
    CRM_CLIENT_SECRET: Optional[str] = None
    CRM_AUTHORITY_URL: str = "https://login.microsoftonline.com"
    HTTP_TIMEOUT_SECONDS: float = 100.0

    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_PASSWORD: Optional[str] = None
    REDIS_SSL: bool = False
    REDIS_DB: int = 0

    BATCH_MAX_OPERATIONS: int = 1000
    MAX_CONCURRENT_BATCHES: int = 4
    BATCH_MAX_ATTEMPTS: int = 5
    BATCH_INITIAL_BACKOFF_SECONDS: int = 1
    BATCH_MAX_BACKOFF_SECONDS: int = 30
    PARTIAL_FAILURE_RETRY_DELAY_SECONDS: float = 0.5
    RETRY_JITTER_MAX_SECONDS: float = 0.5

    CIRCUIT_BREAKER_KEY: str = "crm:circuitbreaker"
    CIRCUIT_BREAKER_MIN_PAUSE_SECONDS: float = 5.0
    CIRCUIT_BREAKER_MAX_PAUSE_SECONDS: float = 60.0

    IDENTIFIER_CACHE_TTL_DAYS: int = 90
    ALTERNATE_KEYS: Dict[str, str] = Field(default_factory=dict)

    BATCH_DEBUG: bool = False
    CACHE_DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    @field_validator("CRM_RESOURCE_URL")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Normalize the resource URL so paths can be appended with a single slash."""
        if not v.strip():
            raise ValueError("CRM_RESOURCE_URL must not be empty")
        return v.strip().rstrip("/")

    @field_validator("BATCH_MAX_OPERATIONS")
    @classmethod
    def clamp_batch_size(cls, v: int) -> int:
        """Clamp the batch size to what the $batch endpoint accepts."""
        return min(max(v, 10), 1000)

    @field_validator(
        "MAX_CONCURRENT_BATCHES",
        "BATCH_MAX_ATTEMPTS",
        "BATCH_INITIAL_BACKOFF_SECONDS",
        "BATCH_MAX_BACKOFF_SECONDS",
    )
    @classmethod
    def at_least_one(cls, v: int) -> int:
        """Counts and intervals below one fall back to one."""
        return max(1, v)

    @property
    def web_api_url(self) -> str:
        """Root of the web API, e.g. https://org.crm.dynamics.com/api/data/v9.2."""
        return f"{self.CRM_RESOURCE_URL}/api/data/{self.CRM_API_VERSION}"

    @property
    def identifier_cache_ttl_seconds(self) -> int:
        """Retention window of identifier cache entries in seconds."""
        return self.IDENTIFIER_CACHE_TTL_DAYS * 24 * 60 * 60


settings = Settings()
