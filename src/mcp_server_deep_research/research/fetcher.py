"""Content fetcher backed by the Firecrawl search API."""

import logging
from typing import Any

import httpx

from ..exceptions import FetchError, FetchTimeoutError
from .models import SearchItem, SearchResponse

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.firecrawl.dev"


class FirecrawlFetcher:
    """Searches the web and scrapes each hit to markdown in one request.

    Uses one shared ``httpx.AsyncClient``. When a client is passed in, the
    caller owns it and ``aclose`` leaves it open.
    """

    def __init__(
        self,
        api_key: str | None,
        base_url: str = DEFAULT_BASE_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient()

    async def search(self, query_text: str, limit: int = 5, timeout: float = 15.0) -> SearchResponse:
        """Search for ``query_text`` and return up to ``limit`` scraped results.

        Args:
            query_text: SERP query
            limit: Maximum number of results
            timeout: Seconds allowed for the request

        Raises:
            FetchTimeoutError: The request timed out.
            FetchError: The request failed or the response was not usable.
        """
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        payload = {
            "query": query_text,
            "limit": limit,
            "timeout": int(timeout * 1000),
            "scrapeOptions": {"formats": ["markdown"]},
        }

        try:
            response = await self._client.post(f"{self.base_url}/v1/search", json=payload, headers=headers, timeout=timeout)
            response.raise_for_status()
            body = response.json()
        except httpx.TimeoutException as e:
            raise FetchTimeoutError(f"Search timed out after {timeout}s: {query_text[:80]}") from e
        except httpx.HTTPStatusError as e:
            raise FetchError(f"Search failed with HTTP {e.response.status_code}: {e.response.text[:200]}") from e
        except httpx.HTTPError as e:
            raise FetchError(f"Search request failed: {e}") from e
        except ValueError as e:
            raise FetchError(f"Search returned invalid JSON: {e}") from e

        items = self._parse_items(body)
        logger.debug(f"Search returned {len(items)} results for '{query_text[:80]}'")
        return SearchResponse(items=items[:limit])

    @staticmethod
    def _parse_items(body: Any) -> list[SearchItem]:
        if not isinstance(body, dict):
            raise FetchError("Search response is not a JSON object")
        if body.get("success") is False:
            raise FetchError(f"Search unsuccessful: {body.get('error') or 'unknown error'}")

        items = []
        for entry in body.get("data") or []:
            if not isinstance(entry, dict):
                continue
            metadata = entry.get("metadata") or {}
            items.append(
                SearchItem(
                    url=entry.get("url") or metadata.get("sourceURL"),
                    title=entry.get("title") or metadata.get("title"),
                    markdown=entry.get("markdown"),
                )
            )
        return items

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "FirecrawlFetcher":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()
