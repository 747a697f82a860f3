"""Two-tier cache for CRM identifier resolution.

Business keys (account numbers, asset codes, ...) are resolved to CRM record
identifiers through a process-local dict, then Redis, then a single bulk OData
query for whatever is still missing. Resolved identifiers are written back to
both tiers.
"""

from typing import Dict, Iterable, List, Optional

from redis.exceptions import RedisError

from crmsync.core.logging import ContextualLogger
from crmsync.core.logging import logger as default_logger
from crmsync.core.redis_client import RedisClient
from crmsync.platform.batch.types import IdentifierLookup, distinct_keys
from crmsync.platform.crm.odata import build_or_filter, build_query_url
from crmsync.platform.crm.query_client import CrmQueryClient


class IdentifierCacheService:
    """Cache-aside resolution of business keys to CRM identifiers.

    Redis is an optimization: read and write failures are logged and treated as
    misses. Failures of the CRM query itself propagate to the caller.
    """

    # 90 days
    DEFAULT_TTL = 90 * 24 * 60 * 60

    def __init__(
        self,
        redis: RedisClient,
        query_client: CrmQueryClient,
        web_api_url: str,
        ttl_seconds: int = DEFAULT_TTL,
        cache_debug: bool = False,
        logger: Optional[ContextualLogger] = None,
    ):
        """Initialize the identifier cache.

        Args:
            redis: Shared Redis client (distributed tier)
            query_client: Client used to query the CRM on a miss
            web_api_url: Root of the web API
            ttl_seconds: Retention of Redis entries
            cache_debug: Log HIT/MISS/SET per key
            logger: Optional contextual logger
        """
        self._redis = redis
        self._query_client = query_client
        self.web_api_url = web_api_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.cache_debug = cache_debug
        self.logger = logger or default_logger.with_context(component="identifier_cache")
        # Keyed by casefolded cache key.
        self._local: Dict[str, str] = {}

    @staticmethod
    def cache_key(collection: str, key_field: str, key_value: str) -> str:
        """Build the key shared by both tiers: ``{collection}:{keyField}:{keyValue}``."""
        return f"{collection}:{key_field}:{key_value}"

    def try_get(self, cache_key: str) -> Optional[str]:
        """Look up the local tier only. Matching ignores case, like the CRM."""
        return self._local.get(cache_key.casefold())

    def _debug(self, log: ContextualLogger, message: str) -> None:
        if self.cache_debug:
            log.debug(f"[IdentifierCache] {message}")

    async def _read_distributed(
        self, cache_keys: List[str], log: ContextualLogger
    ) -> List[Optional[str]]:
        try:
            values = await self._redis.client.mget(cache_keys)
        except RedisError as e:
            log.warning(f"[IdentifierCache] Redis read failed: {e}. Falling back to CRM query.")
            return [None] * len(cache_keys)
        return [v.decode("utf-8") if isinstance(v, bytes) else v for v in values]

    async def _write_distributed(self, entries: Dict[str, str], log: ContextualLogger) -> None:
        if not entries:
            return
        try:
            for cache_key, identifier in entries.items():
                await self._redis.client.setex(cache_key, self.ttl_seconds, identifier)
        except RedisError as e:
            log.warning(f"[IdentifierCache] Redis write of {len(entries)} entries failed: {e}")
            return
        for cache_key in entries:
            self._debug(log, f"SET {cache_key} (ttl={self.ttl_seconds}s)")

    async def _query(
        self, lookup: IdentifierLookup, keys: List[str], token: str, log: ContextualLogger
    ) -> Dict[str, str]:
        url = build_query_url(
            self.web_api_url,
            lookup.collection,
            select=(lookup.key_field, lookup.id_field),
            filter_expression=build_or_filter(lookup.key_field, keys, numeric=lookup.numeric),
        )
        log.debug(
            f"[IdentifierCache] Querying {lookup.collection} for {len(keys)} "
            f"{lookup.key_field} value(s)"
        )
        return await self._query_client.bulk_query_and_map(
            url, lookup.key_field, lookup.id_field, token, logger=log
        )

    @staticmethod
    def _match_requested(requested: List[str], rows: Dict[str, str]) -> Dict[str, str]:
        """Map CRM rows back to the requested keys.

        String ``eq`` filters are case-insensitive on the CRM side, so a row may
        come back as ``ABC`` for a request of ``abc``. Entries are keyed by the
        requested spelling; rows matching nothing requested are dropped.
        """
        by_folded = {key.casefold(): key for key in requested}
        matched: Dict[str, str] = {}
        for key, identifier in rows.items():
            original = by_folded.get(key.casefold())
            if original is not None:
                matched[original] = identifier
        return matched

    def _store_local(self, lookup: IdentifierLookup, found: Dict[str, str]) -> Dict[str, str]:
        entries = {}
        for key, identifier in found.items():
            cache_key = self.cache_key(lookup.collection, lookup.key_field, key)
            self._local[cache_key.casefold()] = identifier
            entries[cache_key] = identifier
        return entries

    async def resolve(
        self,
        lookup: IdentifierLookup,
        token: str,
        logger: Optional[ContextualLogger] = None,
    ) -> Dict[str, str]:
        """Resolve business keys to CRM identifiers.

        Args:
            lookup: Collection, fields and keys to resolve
            token: Bearer token used if the CRM must be queried
            logger: Optional logger carrying the caller's context

        Returns:
            Mapping of business key -> identifier. Keys the CRM does not know are
            omitted.

        Raises:
            httpx.HTTPError: If the bulk CRM query fails
        """
        log = logger or self.logger
        keys = distinct_keys(lookup.keys)
        resolved: Dict[str, str] = {}
        if not keys:
            return resolved

        missing: List[str] = []
        for key in keys:
            cache_key = self.cache_key(lookup.collection, lookup.key_field, key)
            identifier = self._local.get(cache_key.casefold())
            if identifier is not None:
                resolved[key] = identifier
                self._debug(log, f"HIT local {cache_key}")
            else:
                missing.append(key)

        if missing:
            cache_keys = [self.cache_key(lookup.collection, lookup.key_field, k) for k in missing]
            values = await self._read_distributed(cache_keys, log)
            still_missing = []
            for key, cache_key, identifier in zip(missing, cache_keys, values):
                if identifier:
                    resolved[key] = identifier
                    self._local[cache_key.casefold()] = identifier
                    self._debug(log, f"HIT redis {cache_key}")
                else:
                    still_missing.append(key)
                    self._debug(log, f"MISS {cache_key}")
            missing = still_missing

        if missing:
            found = self._match_requested(missing, await self._query(lookup, missing, token, log))
            resolved.update(found)
            await self._write_distributed(self._store_local(lookup, found), log)

            unresolved = len(missing) - len(found)
            if unresolved:
                log.debug(
                    f"[IdentifierCache] {unresolved} {lookup.key_field} value(s) not found "
                    f"in {lookup.collection}"
                )

        return resolved

    async def preload(
        self,
        lookups: Iterable[IdentifierLookup],
        token: str,
        logger: Optional[ContextualLogger] = None,
    ) -> Dict[str, str]:
        """Resolve several lookups up front, one bulk query per collection at most.

        Returns:
            Mapping of cache key -> identifier across all lookups
        """
        results: Dict[str, str] = {}
        for lookup in lookups:
            resolved = await self.resolve(lookup, token, logger)
            for key, identifier in resolved.items():
                results[self.cache_key(lookup.collection, lookup.key_field, key)] = identifier
        return results

    async def refresh(
        self,
        lookup: IdentifierLookup,
        token: str,
        logger: Optional[ContextualLogger] = None,
    ) -> Dict[str, str]:
        """Re-query identifiers after a write, bypassing both tiers, and overwrite them.

        Used once a batch has created records so later events resolve the new
        identifiers without another CRM round-trip.

        Returns:
            Mapping of business key -> identifier for the keys the CRM returned
        """
        log = logger or self.logger
        keys = distinct_keys(lookup.keys)
        if not keys:
            return {}
        found = self._match_requested(keys, await self._query(lookup, keys, token, log))
        await self._write_distributed(self._store_local(lookup, found), log)
        log.debug(
            f"[IdentifierCache] Refreshed {len(found)}/{len(keys)} {lookup.collection} identifiers"
        )
        return found
