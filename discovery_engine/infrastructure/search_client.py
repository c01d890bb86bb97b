"""
Search-engine service.

`SearchEngine` is the narrow contract the orchestrator uses: a query string and
a credential in, a list of result URLs and snippets out. `HttpSearchEngine`
sends free credential slots to the Google Custom Search JSON API and the paid
fallback to SerpAPI, and maps HTTP failures onto the engine's error taxonomy:

- 429 or a quota error in the body -> RateLimitError (caller rotates credential)
- 403                              -> PlatformBlockedError
- 5xx, timeouts, connection errors -> TransientFetchError (caller retries)
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import httpx

from discovery_engine.config import Settings
from discovery_engine.domain.errors import PlatformBlockedError, RateLimitError, TransientFetchError
from discovery_engine.domain.models import Credential, SearchResult
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

GOOGLE_CSE_URL = "https://www.googleapis.com/customsearch/v1"
SERPAPI_URL = "https://serpapi.com/search.json"

_QUOTA_REASONS = {"rateLimitExceeded", "dailyLimitExceeded", "userRateLimitExceeded", "quotaExceeded"}


@runtime_checkable
class SearchEngine(Protocol):
    async def search(self, query: str, credential: Credential, *, platform: str = "") -> List[SearchResult]: ...


def _quota_error(payload: Dict[str, Any]) -> bool:
    error = payload.get("error")
    if isinstance(error, dict):
        reasons = {item.get("reason") for item in error.get("errors", []) if isinstance(item, dict)}
        return bool(reasons & _QUOTA_REASONS)
    if isinstance(error, str):
        lowered = error.lower()
        return "run out of searches" in lowered or "rate limit" in lowered
    return False


class HttpSearchEngine:
    def __init__(
        self,
        engine_id: str = "",
        *,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        results_per_query: int = 10,
    ) -> None:
        self.engine_id = engine_id
        self.results_per_query = results_per_query
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings, client: Optional[httpx.AsyncClient] = None) -> "HttpSearchEngine":
        return cls(settings.search_engine_id, timeout=settings.search_timeout_seconds, client=client)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _request(self, query: str, credential: Credential) -> tuple[str, Dict[str, Any]]:
        if credential.is_paid:
            if not credential.api_key:
                raise RateLimitError(credential.id, "no paid search key configured")
            return SERPAPI_URL, {
                "engine": "google",
                "q": query,
                "num": self.results_per_query,
                "api_key": credential.api_key,
            }
        return GOOGLE_CSE_URL, {
            "key": credential.api_key,
            "cx": self.engine_id,
            "q": query,
            "num": self.results_per_query,
        }

    async def search(self, query: str, credential: Credential, *, platform: str = "") -> List[SearchResult]:
        url, params = self._request(query, credential)
        try:
            response = await self._client.get(url, params=params)
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise TransientFetchError(f"search request failed: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitError(credential.id)
        if response.status_code == 403:
            try:
                payload = response.json()
            except ValueError:
                payload = {}
            if _quota_error(payload):
                raise RateLimitError(credential.id, "quota exceeded")
            raise PlatformBlockedError(platform or "search", "search access denied")
        if response.status_code >= 500:
            raise TransientFetchError(f"search service returned {response.status_code}")
        response.raise_for_status()

        payload = response.json()
        if _quota_error(payload):
            raise RateLimitError(credential.id, "quota exceeded")

        items = payload.get("organic_results" if credential.is_paid else "items", [])
        results = [
            SearchResult(url=item["link"], title=item.get("title", ""), snippet=item.get("snippet", ""))
            for item in items
            if item.get("link")
        ]

        log.debug(
            f"Search returned {len(results)} result(s)",
            extra={"query": query, "credential_id": credential.id, "paid": credential.is_paid},
        )
        return results


__all__ = ["GOOGLE_CSE_URL", "HttpSearchEngine", "SERPAPI_URL", "SearchEngine"]
