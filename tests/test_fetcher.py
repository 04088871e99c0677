"""Tests for the Firecrawl content fetcher using an httpx mock transport."""

import json

import httpx
import pytest

from mcp_server_deep_research.exceptions import FetchError, FetchTimeoutError
from mcp_server_deep_research.research.fetcher import FirecrawlFetcher

pytestmark = pytest.mark.anyio


def make_fetcher(handler, api_key="fc-test"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FirecrawlFetcher(api_key, base_url="https://firecrawl.test/", client=client), client


class TestSearch:
    """Tests for FirecrawlFetcher.search."""

    async def test_request_shape(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"success": True, "data": []})

        fetcher, client = make_fetcher(handler)
        async with client:
            await fetcher.search("solar permits", limit=3, timeout=15.0)

        assert seen["url"] == "https://firecrawl.test/v1/search"
        assert seen["auth"] == "Bearer fc-test"
        assert seen["body"] == {
            "query": "solar permits",
            "limit": 3,
            "timeout": 15000,
            "scrapeOptions": {"formats": ["markdown"]},
        }

    async def test_parses_items(self):
        def handler(request):
            return httpx.Response(
                200,
                json={
                    "success": True,
                    "data": [
                        {"url": "https://a.example", "title": "A", "markdown": "# A"},
                        {"metadata": {"sourceURL": "https://b.example", "title": "B"}},
                        {"url": "https://a.example", "markdown": "dup"},
                    ],
                },
            )

        fetcher, client = make_fetcher(handler)
        async with client:
            response = await fetcher.search("q")

        assert response.urls == ["https://a.example", "https://b.example"]
        assert response.contents == ["# A", "dup"]
        assert response.items[1].title == "B"

    async def test_result_limit(self):
        def handler(request):
            return httpx.Response(200, json={"data": [{"url": f"https://{i}.example"} for i in range(10)]})

        fetcher, client = make_fetcher(handler)
        async with client:
            response = await fetcher.search("q", limit=2)
        assert len(response.items) == 2

    async def test_no_key_no_auth_header(self):
        def handler(request):
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"data": []})

        fetcher, client = make_fetcher(handler, api_key=None)
        async with client:
            await fetcher.search("q")


class TestErrors:
    """Transport and API failures map to FetchError."""

    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        fetcher, client = make_fetcher(handler)
        async with client:
            with pytest.raises(FetchTimeoutError):
                await fetcher.search("q")

    async def test_http_status(self):
        fetcher, client = make_fetcher(lambda request: httpx.Response(429, text="rate limited"))
        async with client:
            with pytest.raises(FetchError, match="HTTP 429"):
                await fetcher.search("q")

    async def test_connection_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        fetcher, client = make_fetcher(handler)
        async with client:
            with pytest.raises(FetchError, match="request failed"):
                await fetcher.search("q")

    async def test_unsuccessful_body(self):
        fetcher, client = make_fetcher(lambda request: httpx.Response(200, json={"success": False, "error": "bad key"}))
        async with client:
            with pytest.raises(FetchError, match="bad key"):
                await fetcher.search("q")

    async def test_invalid_json(self):
        fetcher, client = make_fetcher(lambda request: httpx.Response(200, text="<html>"))
        async with client:
            with pytest.raises(FetchError, match="invalid JSON"):
                await fetcher.search("q")

    def test_timeout_is_fetch_error(self):
        assert issubclass(FetchTimeoutError, FetchError)


class TestClientOwnership:
    async def test_external_client_left_open(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json={})))
        async with FirecrawlFetcher("k", client=client):
            pass
        assert not client.is_closed
        await client.aclose()
