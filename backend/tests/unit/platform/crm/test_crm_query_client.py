"""Tests for the CRM query client."""

import httpx
import pytest

from crmsync.platform.crm.query_client import CrmQueryClient

WEB_API = "https://contoso.crm.example.com/api/data/v9.2"


@pytest.mark.asyncio
async def test_bulk_query_maps_rows_and_follows_next_link():
    """Test that every page is read and values are stringified."""
    next_link = f"{WEB_API}/accounts?$skiptoken=abc"
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if "skiptoken" in str(request.url):
            return httpx.Response(200, json={"value": [{"dc_idstructure": 7, "accountid": "g-7"}]})
        return httpx.Response(
            200,
            json={
                "value": [
                    {"dc_idstructure": "S1", "accountid": "g-1"},
                    {"dc_idstructure": None, "accountid": "g-x"},
                ],
                "@odata.nextLink": next_link,
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = CrmQueryClient(http)
        result = await client.bulk_query_and_map(
            f"{WEB_API}/accounts?$select=dc_idstructure,accountid",
            "dc_idstructure",
            "accountid",
            "token-1",
        )

    assert result == {"S1": "g-1", "7": "g-7"}
    assert len(seen) == 2
    assert seen[0].headers["Authorization"] == "Bearer token-1"
    assert seen[0].headers["Accept"] == "application/json"


@pytest.mark.asyncio
async def test_error_status_is_raised():
    """Test that a non-2xx query response propagates as an HTTP error."""

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        with pytest.raises(httpx.HTTPStatusError):
            await CrmQueryClient(http).execute_query(f"{WEB_API}/accounts", "t")
