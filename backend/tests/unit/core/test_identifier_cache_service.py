"""Tests for the identifier cache service.

Covers the local -> Redis -> CRM fall-through, key normalization, Redis
degradation and the post-write refresh.
"""

from unittest.mock import AsyncMock, MagicMock
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from crmsync.core.identifier_cache_service import IdentifierCacheService
from crmsync.core.redis_client import RedisClient
from crmsync.platform.batch.types import IdentifierLookup

WEB_API = "https://contoso.crm.example.com/api/data/v9.2"


@pytest.fixture
def query_client():
    """Create a mock CRM query client returning no rows."""
    mock = MagicMock()
    mock.bulk_query_and_map = AsyncMock(return_value={})
    return mock


@pytest.fixture
def cache(redis, query_client):
    """Create an identifier cache over the in-memory Redis."""
    return IdentifierCacheService(redis, query_client, WEB_API, ttl_seconds=3600)


@pytest.fixture
def account_lookup():
    """Create a lookup of accounts by structure id."""
    return IdentifierLookup(
        collection="accounts",
        key_field="dc_idstructure",
        id_field="accountid",
        keys=("S1", "S2"),
    )


def _filter_of(url: str) -> str:
    return parse_qs(urlsplit(url).query)["$filter"][0]


# ============================================================================
# Fall-through
# ============================================================================


@pytest.mark.asyncio
async def test_cold_cache_queries_once_then_serves_from_local_tier(
    cache, query_client, account_lookup, fake_redis
):
    """Test that a second resolve of the same keys makes no remote calls."""
    query_client.bulk_query_and_map.return_value = {"S1": "guid-1", "S2": "guid-2"}

    first = await cache.resolve(account_lookup, "token")
    assert first == {"S1": "guid-1", "S2": "guid-2"}
    assert query_client.bulk_query_and_map.await_count == 1

    fake_redis.calls.clear()
    second = await cache.resolve(account_lookup, "token")

    assert second == first
    assert query_client.bulk_query_and_map.await_count == 1
    assert fake_redis.calls == []


@pytest.mark.asyncio
async def test_resolved_identifiers_written_to_redis_with_ttl(
    cache, query_client, account_lookup, fake_redis
):
    """Test that query results land in Redis under collection:field:value."""
    query_client.bulk_query_and_map.return_value = {"S1": "guid-1"}

    await cache.resolve(account_lookup, "token")

    assert fake_redis.store == {"accounts:dc_idstructure:S1": "guid-1"}
    assert fake_redis.ttls["accounts:dc_idstructure:S1"] == 3600


@pytest.mark.asyncio
async def test_other_instance_served_from_redis(
    fake_redis, query_client, account_lookup
):
    """Test that an instance with an empty local tier reads what another instance wrote."""
    query_client.bulk_query_and_map.return_value = {"S1": "guid-1", "S2": "guid-2"}
    writer = IdentifierCacheService(RedisClient(client=fake_redis), query_client, WEB_API)
    await writer.resolve(account_lookup, "token")

    reader_query = MagicMock()
    reader_query.bulk_query_and_map = AsyncMock()
    reader = IdentifierCacheService(RedisClient(client=fake_redis), reader_query, WEB_API)

    result = await reader.resolve(account_lookup, "token")

    assert result == {"S1": "guid-1", "S2": "guid-2"}
    reader_query.bulk_query_and_map.assert_not_awaited()
    assert reader.try_get("accounts:dc_idstructure:S1") == "guid-1"


@pytest.mark.asyncio
async def test_only_missing_keys_are_queried(cache, query_client, fake_redis):
    """Test that keys found in Redis are excluded from the CRM filter."""
    fake_redis.store["accounts:dc_idstructure:S1"] = "guid-1"
    query_client.bulk_query_and_map.return_value = {"S2": "guid-2"}
    lookup = IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("S1", "S2"))

    result = await cache.resolve(lookup, "token")

    assert result == {"S1": "guid-1", "S2": "guid-2"}
    url = query_client.bulk_query_and_map.await_args.args[0]
    assert _filter_of(url) == "dc_idstructure eq 'S2'"


@pytest.mark.asyncio
async def test_unknown_keys_are_omitted(cache, query_client):
    """Test that keys the CRM does not return are absent from the result."""
    query_client.bulk_query_and_map.return_value = {"S1": "guid-1"}
    lookup = IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("S1", "S9"))

    result = await cache.resolve(lookup, "token")

    assert result == {"S1": "guid-1"}


@pytest.mark.asyncio
async def test_rows_differing_only_in_case_resolve_requested_key(cache, query_client, fake_redis):
    """Test that a CRM row spelled differently is keyed by the requested spelling."""
    query_client.bulk_query_and_map.return_value = {"ABC": "guid-1"}
    lookup = IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("abc",))

    first = await cache.resolve(lookup, "token")
    second = await cache.resolve(lookup, "token")

    assert first == {"abc": "guid-1"}
    assert second == {"abc": "guid-1"}
    assert query_client.bulk_query_and_map.await_count == 1
    assert fake_redis.store == {"accounts:dc_idstructure:abc": "guid-1"}


@pytest.mark.asyncio
async def test_local_tier_lookup_ignores_case(cache, query_client):
    """Test that a key cached in one spelling serves another from the local tier."""
    query_client.bulk_query_and_map.return_value = {"S1": "guid-1"}
    await cache.resolve(
        IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("S1",)), "token"
    )

    result = await cache.resolve(
        IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("s1",)), "token"
    )

    assert result == {"s1": "guid-1"}
    assert query_client.bulk_query_and_map.await_count == 1
    assert cache.try_get("accounts:dc_idstructure:s1") == "guid-1"


# ============================================================================
# Key normalization and filter
# ============================================================================


@pytest.mark.asyncio
async def test_blank_and_duplicate_keys_dropped_before_query(cache, query_client):
    """Test that keys are stripped, blank ones dropped and duplicates removed."""
    lookup = IdentifierLookup(
        "accounts", "dc_idstructure", "accountid", keys=(" S1 ", "", "S1", None, "S2")
    )

    await cache.resolve(lookup, "token")

    url = query_client.bulk_query_and_map.await_args.args[0]
    assert _filter_of(url) == "dc_idstructure eq 'S1' or dc_idstructure eq 'S2'"


@pytest.mark.asyncio
async def test_empty_lookup_makes_no_calls(cache, query_client, fake_redis):
    """Test that a lookup without usable keys returns immediately."""
    lookup = IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("", "  "))

    assert await cache.resolve(lookup, "token") == {}
    query_client.bulk_query_and_map.assert_not_awaited()
    assert fake_redis.calls == []


@pytest.mark.asyncio
async def test_string_keys_are_quote_escaped_in_filter(cache, query_client):
    """Test that single quotes in string keys are doubled."""
    lookup = IdentifierLookup("contacts", "dc_name", "contactid", keys=("O'Brien",))

    await cache.resolve(lookup, "token")

    url = query_client.bulk_query_and_map.await_args.args[0]
    assert _filter_of(url) == "dc_name eq 'O''Brien'"


@pytest.mark.asyncio
async def test_numeric_keys_are_unquoted_in_filter(cache, query_client):
    """Test that numeric lookups embed values as-is."""
    lookup = IdentifierLookup(
        "msdyn_workorders", "dc_number", "msdyn_workorderid", keys=(42, 7), numeric=True
    )

    await cache.resolve(lookup, "token")

    url = query_client.bulk_query_and_map.await_args.args[0]
    assert _filter_of(url) == "dc_number eq 42 or dc_number eq 7"
    query = parse_qs(urlsplit(url).query)
    assert query["$select"] == ["dc_number,msdyn_workorderid"]


# ============================================================================
# Failure handling
# ============================================================================


@pytest.mark.asyncio
async def test_redis_read_failure_falls_back_to_query(query_client, account_lookup):
    """Test that a Redis outage degrades to a cache miss."""
    broken = MagicMock()
    broken.mget = AsyncMock(side_effect=RedisConnectionError("down"))
    broken.setex = AsyncMock(side_effect=RedisConnectionError("down"))
    query_client.bulk_query_and_map.return_value = {"S1": "guid-1", "S2": "guid-2"}
    cache = IdentifierCacheService(RedisClient(client=broken), query_client, WEB_API)

    result = await cache.resolve(account_lookup, "token")

    assert result == {"S1": "guid-1", "S2": "guid-2"}
    assert cache.try_get("accounts:dc_idstructure:S2") == "guid-2"


@pytest.mark.asyncio
async def test_query_failure_propagates(cache, query_client, account_lookup):
    """Test that a CRM query error is not swallowed."""
    query_client.bulk_query_and_map.side_effect = httpx.ConnectError("unreachable")

    with pytest.raises(httpx.ConnectError):
        await cache.resolve(account_lookup, "token")


# ============================================================================
# Preload and refresh
# ============================================================================


@pytest.mark.asyncio
async def test_preload_returns_results_keyed_by_cache_key(cache, query_client):
    """Test that preload resolves several collections in one pass."""
    query_client.bulk_query_and_map.side_effect = [
        {"S1": "acc-1"},
        {"P1": "panel-1"},
    ]
    lookups = [
        IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("S1",)),
        IdentifierLookup("dc_panels", "dc_code", "dc_panelid", keys=("P1",)),
    ]

    result = await cache.preload(lookups, "token")

    assert result == {
        "accounts:dc_idstructure:S1": "acc-1",
        "dc_panels:dc_code:P1": "panel-1",
    }
    assert query_client.bulk_query_and_map.await_count == 2


@pytest.mark.asyncio
async def test_refresh_bypasses_cache_and_overwrites(cache, query_client, fake_redis):
    """Test that refresh always queries and replaces stale entries in both tiers."""
    fake_redis.store["accounts:dc_idstructure:S1"] = "stale"
    query_client.bulk_query_and_map.return_value = {"S1": "fresh"}
    lookup = IdentifierLookup("accounts", "dc_idstructure", "accountid", keys=("S1",))

    result = await cache.refresh(lookup, "token")

    assert result == {"S1": "fresh"}
    query_client.bulk_query_and_map.assert_awaited_once()
    assert fake_redis.store["accounts:dc_idstructure:S1"] == "fresh"
    assert cache.try_get("accounts:dc_idstructure:S1") == "fresh"


def test_cache_key_format():
    """Test the shared cache key layout."""
    assert IdentifierCacheService.cache_key("accounts", "dc_idstructure", "S1") == (
        "accounts:dc_idstructure:S1"
    )
