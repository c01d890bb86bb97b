from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Callable

import httpx
import pytest

from discovery_engine.domain.errors import PlatformBlockedError, RateLimitError, TransientFetchError
from discovery_engine.domain.models import CredentialSlot, PaidFallback
from discovery_engine.infrastructure.search_client import GOOGLE_CSE_URL, SERPAPI_URL, HttpSearchEngine

QUERY = 'site:wolt.com/de "planted" Berlin'
VENUE_URL = "https://wolt.com/de/deu/berlin/restaurant/green-bowl"

FREE = CredentialSlot(id="slot-1", api_key="key-1", daily_quota=100, reset_at=datetime(2026, 3, 11, tzinfo=UTC))
PAID = PaidFallback(api_key="serp-key", cost_per_query=0.005)


def _engine(handler: Callable[[httpx.Request], httpx.Response], requests: list[httpx.Request]) -> HttpSearchEngine:
    def record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return HttpSearchEngine("cx-test", client=client)


def _json(status: int, payload: Any) -> Callable[[httpx.Request], httpx.Response]:
    return lambda request: httpx.Response(status, json=payload)


@pytest.mark.asyncio
async def test_free_slot_queries_custom_search() -> None:
    requests: list[httpx.Request] = []
    engine = _engine(
        _json(200, {"items": [{"link": VENUE_URL, "title": "Green Bowl", "snippet": "planted"}, {"title": "no link"}]}),
        requests,
    )

    results = await engine.search(QUERY, FREE, platform="wolt")

    assert [r.url for r in results] == [VENUE_URL]
    assert results[0].title == "Green Bowl"
    (request,) = requests
    assert str(request.url).startswith(GOOGLE_CSE_URL)
    assert request.url.params["key"] == "key-1"
    assert request.url.params["cx"] == "cx-test"
    assert request.url.params["q"] == QUERY


@pytest.mark.asyncio
async def test_paid_fallback_queries_serpapi() -> None:
    requests: list[httpx.Request] = []
    engine = _engine(_json(200, {"organic_results": [{"link": VENUE_URL}]}), requests)

    results = await engine.search(QUERY, PAID)

    assert [r.url for r in results] == [VENUE_URL]
    assert str(requests[0].url).startswith(SERPAPI_URL)
    assert requests[0].url.params["api_key"] == "serp-key"
    assert requests[0].url.params["engine"] == "google"


@pytest.mark.asyncio
async def test_paid_fallback_without_key_is_rate_limited() -> None:
    requests: list[httpx.Request] = []
    engine = _engine(_json(200, {}), requests)
    with pytest.raises(RateLimitError):
        await engine.search(QUERY, PaidFallback())
    assert requests == []


@pytest.mark.asyncio
async def test_http_429_is_rate_limit_for_that_credential() -> None:
    engine = _engine(_json(429, {}), [])
    with pytest.raises(RateLimitError) as excinfo:
        await engine.search(QUERY, FREE)
    assert excinfo.value.credential_id == "slot-1"


@pytest.mark.asyncio
async def test_403_quota_error_is_rate_limit() -> None:
    payload = {"error": {"code": 403, "errors": [{"reason": "dailyLimitExceeded"}]}}
    engine = _engine(_json(403, payload), [])
    with pytest.raises(RateLimitError):
        await engine.search(QUERY, FREE)


@pytest.mark.asyncio
async def test_plain_403_blocks_the_platform() -> None:
    engine = _engine(_json(403, {"error": {"errors": [{"reason": "forbidden"}]}}), [])
    with pytest.raises(PlatformBlockedError) as excinfo:
        await engine.search(QUERY, FREE, platform="wolt")
    assert excinfo.value.platform == "wolt"


@pytest.mark.asyncio
async def test_serpapi_quota_message_in_body_is_rate_limit() -> None:
    engine = _engine(_json(200, {"error": "Your account has run out of searches."}), [])
    with pytest.raises(RateLimitError):
        await engine.search(QUERY, PAID)


@pytest.mark.asyncio
async def test_server_errors_and_transport_failures_are_transient() -> None:
    engine = _engine(_json(503, {}), [])
    with pytest.raises(TransientFetchError):
        await engine.search(QUERY, FREE)

    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    engine = _engine(refuse, [])
    with pytest.raises(TransientFetchError):
        await engine.search(QUERY, FREE)


@pytest.mark.asyncio
async def test_injected_client_is_left_open() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(200, json={})))
    engine = HttpSearchEngine("cx-test", client=client)
    await engine.aclose()
    assert not client.is_closed
    await client.aclose()
