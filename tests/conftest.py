"""
Pytest configuration for the venue discovery engine.

Provides fixtures for:
- Settings override for fast, deterministic runs
- A controllable clock and an in-memory document store
- Fake search engine, content analyzer and browser resources
- Database connection management for Postgres integration tests
"""

from __future__ import annotations

import asyncio
import os
from datetime import UTC, datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

import psycopg
import pytest

from discovery_engine.config import Settings
from discovery_engine.domain.models import Credential, SearchResult
from discovery_engine.infrastructure.content_analysis import AnalysisRequest, AnalysisResult, ExtractedDish
from discovery_engine.infrastructure.document_store import InMemoryDocumentStore
from discovery_engine.orchestrator import RunOrchestrator, build_orchestrator
from discovery_engine.sessions import ExtractionSessionManager, PageSnapshot, SessionResource, origin_of
from discovery_engine.strategies import seed_strategies

START = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)

WOLT_VENUE_URL = "https://wolt.com/de/deu/berlin/restaurant/green-bowl"
WOLT_LISTING_URL = "https://wolt.com/de/deu/berlin"
UBER_VENUE_URL = "https://www.ubereats.com/de/store/vegan-palace/abc123"


class FrozenClock:
    """Callable clock that only moves when a test advances it."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now += timedelta(**delta)
        return self.now


Responder = Callable[[str, Credential, str], List[SearchResult]]


def default_results(query: str, credential: Credential, platform: str) -> List[SearchResult]:
    if platform == "uber_eats":
        return [SearchResult(url=UBER_VENUE_URL, title="Vegan Palace", snippet="planted.chicken bowls")]
    return [
        SearchResult(url=WOLT_VENUE_URL, title="Green Bowl", snippet="Bowls with planted chicken"),
        SearchResult(url=WOLT_LISTING_URL, title="Restaurants in Berlin", snippet="Order food online"),
    ]


class FakeSearchEngine:
    def __init__(self, responder: Responder = default_results, delay: float = 0.0) -> None:
        self.responder = responder
        self.delay = delay
        self.calls: List[Tuple[str, str]] = []

    async def search(self, query: str, credential: Credential, *, platform: str = "") -> List[SearchResult]:
        self.calls.append((query, credential.id))
        if self.delay:
            await asyncio.sleep(self.delay)
        return list(self.responder(query, credential, platform))


class FakeAnalyzer:
    provider = "claude"

    def __init__(self, result: Optional[AnalysisResult] = None) -> None:
        self.result = result or AnalysisResult(
            name="Green Bowl",
            description="Plant-based bowls",
            signals={"brand_mentioned": True, "menu_item_count": 2},
            dishes=[
                ExtractedDish(
                    name="planted.chicken Bowl",
                    description="Rice bowl with planted chicken, edamame and sesame dressing",
                    price="€12.90",
                    product_guess="planted.chicken",
                ),
                ExtractedDish(name="Kebab Wrap", description="Vegan kebab", product_guess=None),
            ],
        )
        self.requests: List[AnalysisRequest] = []

    async def analyze(self, request: AnalysisRequest) -> AnalysisResult:
        self.requests.append(request)
        return self.result


class FakeBrowser(SessionResource):
    """Records visible state at every fetch; fetching sets a cookie for the page's origin."""

    def __init__(self, resource_id: str = "fake-1", pages: Optional[Dict[str, str]] = None) -> None:
        self.resource_id = resource_id
        self.pages = pages or {}
        self.cookies: Set[str] = set()
        self.events: List[str] = []
        self.seen_state: List[Tuple[str, frozenset]] = []
        self.started = False
        self.fail_with: Optional[Exception] = None

    async def start(self) -> None:
        self.started = True
        self.events.append("start")

    async def clear_state(self, origin: str) -> None:
        self.cookies.clear()
        self.events.append(f"clear:{origin}")

    async def fetch(self, url: str) -> PageSnapshot:
        self.events.append(f"fetch:{url}")
        self.seen_state.append((url, frozenset(self.cookies)))
        self.cookies.add(origin_of(url))
        if self.fail_with is not None:
            raise self.fail_with
        text = self.pages.get(url, "Menu: planted.chicken Bowl 12.90")
        return PageSnapshot(url=url, final_url=url, html=f"<body>{text}</body>", text=text)

    async def release(self) -> None:
        self.events.append("release")

    async def shutdown(self) -> None:
        self.events.append("shutdown")


@pytest.fixture
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides: no pacing, no backoff,
    three free credential slots of quota 2, and a paid fallback.
    """
    return Settings(
        store_backend="memory",
        log_level="DEBUG",
        search_api_keys="key-1,key-2,key-3",
        search_engine_id="cx-test",
        serpapi_key="serp-test",
        search_free_daily_quota=2,
        budget_daily_limit_usd=50.0,
        budget_monthly_limit_usd=1000.0,
        request_delay_seconds=0.0,
        retry_backoff_seconds=0.0,
        item_max_retries=2,
        item_timeout_seconds=5.0,
        cancellation_poll_seconds=0.01,
        max_concurrency_per_platform=1,
        heartbeat_interval_seconds=0.05,
    )


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def memory_store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def fake_search() -> FakeSearchEngine:
    return FakeSearchEngine()


@pytest.fixture
def fake_analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def fake_browser() -> FakeBrowser:
    return FakeBrowser()


@pytest.fixture
def fake_sessions(fake_browser: FakeBrowser) -> ExtractionSessionManager:
    return ExtractionSessionManager([fake_browser])


@pytest.fixture
def orchestrator(
    test_settings: Settings,
    memory_store: InMemoryDocumentStore,
    clock: FrozenClock,
    fake_search: FakeSearchEngine,
    fake_analyzer: FakeAnalyzer,
    fake_sessions: ExtractionSessionManager,
) -> RunOrchestrator:
    """Fully wired orchestrator over fakes, with the seed strategy catalogue loaded."""
    engine = build_orchestrator(
        test_settings,
        memory_store,
        search_engine=fake_search,
        analyzer=fake_analyzer,
        sessions=fake_sessions,
        clock=clock,
    )
    seed_strategies(engine.strategies)
    return engine


@pytest.fixture(scope="session")
def test_dsn() -> str:
    """
    Database connection string for Postgres integration tests.
    """
    return (
        f"postgresql://{os.getenv('DB_USER', 'postgres')}:{os.getenv('DB_PASSWORD', 'postgres')}"
        f"@{os.getenv('DB_HOST', 'localhost')}:{os.getenv('DB_PORT', '5432')}/"
        f"{os.getenv('DB_NAME', 'discovery_engine')}"
    )


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False
