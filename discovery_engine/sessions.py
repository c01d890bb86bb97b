"""
Extraction session manager.

Browser instances are scarce and reused across venue fetches. The manager
hands them out through an exclusive lease (`async with manager.session(url)`)
and enforces isolation itself rather than leaving it to callers:

- before navigation, all cookies, cache and per-origin storage are cleared;
- on every exit path (success, exception, timeout, cancellation) the state is
  cleared again, the protocol-level session is detached, the page is closed
  and the resource goes back to the pool.

Without the pre-navigation clear, state captured while rendering venue A can
leak into the result computed for venue B on the same browser.
"""

from __future__ import annotations

import abc
import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence, TypeVar
from urllib.parse import urlparse

from playwright.async_api import Browser, BrowserContext, CDPSession, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError

from discovery_engine.config import Settings
from discovery_engine.domain.errors import PlatformBlockedError, TransientFetchError
from discovery_engine.platforms import platform_from_url
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0.0.0 Safari/537.36"
)


def origin_of(url: str) -> str:
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Not an absolute URL: {url!r}")
    return f"{parsed.scheme}://{parsed.netloc}"


@dataclass(frozen=True)
class PageSnapshot:
    url: str
    final_url: str
    html: str
    text: str


class SessionResource(abc.ABC):
    """A reusable fetch-and-render resource (one browser instance)."""

    resource_id: str

    @abc.abstractmethod
    async def start(self) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def clear_state(self, origin: str) -> None:
        """Drop cookies, cache and storage, including anything left for `origin`."""
        raise NotImplementedError

    @abc.abstractmethod
    async def fetch(self, url: str) -> PageSnapshot:
        raise NotImplementedError

    @abc.abstractmethod
    async def release(self) -> None:
        """Detach protocol sessions and close pages opened during a lease."""
        raise NotImplementedError

    @abc.abstractmethod
    async def shutdown(self) -> None:
        raise NotImplementedError


class PlaywrightResource(SessionResource):
    """Headless Chromium driven through Playwright, cleared over CDP."""

    def __init__(
        self,
        resource_id: str,
        *,
        headless: bool = True,
        navigation_timeout_ms: int = 60_000,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.resource_id = resource_id
        self.headless = headless
        self.navigation_timeout_ms = navigation_timeout_ms
        self.user_agent = user_agent
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None
        self._cdp: Optional[CDPSession] = None
        self._last_origin: Optional[str] = None

    async def start(self) -> None:
        if self._context is not None:
            return
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(headless=self.headless)
        self._context = await self._browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": 1920, "height": 1080},
        )
        log.info("Browser started", extra={"resource_id": self.resource_id})

    async def _ensure_page(self) -> CDPSession:
        if self._context is None:
            raise RuntimeError("resource not started")
        if self._page is None:
            self._page = await self._context.new_page()
        if self._cdp is None:
            self._cdp = await self._context.new_cdp_session(self._page)
        return self._cdp

    async def clear_state(self, origin: str) -> None:
        cdp = await self._ensure_page()
        await cdp.send("Network.clearBrowserCache")
        await cdp.send("Network.clearBrowserCookies")
        for stale_origin in {o for o in (self._last_origin, origin) if o}:
            await cdp.send("Storage.clearDataForOrigin", {"origin": stale_origin, "storageTypes": "all"})
        assert self._context is not None
        await self._context.clear_cookies()

    async def fetch(self, url: str) -> PageSnapshot:
        await self._ensure_page()
        assert self._page is not None
        self._last_origin = origin_of(url)
        try:
            response = await self._page.goto(url, timeout=self.navigation_timeout_ms, wait_until="domcontentloaded")
        except PlaywrightError as exc:
            raise TransientFetchError(f"navigation failed: {url}: {exc}") from exc
        if response is not None and response.status == 403:
            raise PlatformBlockedError(platform_from_url(url) or self._last_origin, "venue page access denied")
        if response is not None and (response.status == 429 or response.status >= 500):
            raise TransientFetchError(f"venue page returned {response.status}: {url}")
        html = await self._page.content()
        text = await self._page.inner_text("body")
        return PageSnapshot(url=url, final_url=self._page.url, html=html, text=text)

    async def release(self) -> None:
        cdp, page = self._cdp, self._page
        self._cdp, self._page = None, None
        try:
            if cdp is not None:
                await cdp.detach()
        finally:
            if page is not None:
                await page.close()

    async def shutdown(self) -> None:
        await self.release()
        if self._context is not None:
            await self._context.close()
        if self._browser is not None:
            await self._browser.close()
        if self._playwright is not None:
            await self._playwright.stop()
        self._context = self._browser = self._playwright = None
        log.info("Browser stopped", extra={"resource_id": self.resource_id})


@dataclass(frozen=True)
class ExtractionSession:
    """An exclusive lease on one resource for one venue URL."""

    resource: SessionResource
    url: str
    origin: str

    async def fetch(self) -> PageSnapshot:
        return await self.resource.fetch(self.url)


class ExtractionSessionManager:
    def __init__(self, resources: Sequence[SessionResource]) -> None:
        if not resources:
            raise ValueError("at least one session resource is required")
        self._resources: List[SessionResource] = list(resources)
        self._available: Optional[asyncio.Queue[SessionResource]] = None
        self._start_lock: Optional[asyncio.Lock] = None
        self.leases = 0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ExtractionSessionManager":
        return cls(
            [
                PlaywrightResource(
                    f"browser-{index}",
                    headless=settings.browser_headless,
                    navigation_timeout_ms=settings.navigation_timeout_ms,
                )
                for index in range(1, max(settings.browser_pool_size, 1) + 1)
            ]
        )

    @property
    def size(self) -> int:
        return len(self._resources)

    async def start(self) -> None:
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        async with self._start_lock:
            if self._available is not None:
                return
            available: asyncio.Queue[SessionResource] = asyncio.Queue()
            for resource in self._resources:
                await resource.start()
                available.put_nowait(resource)
            self._available = available

    async def close(self) -> None:
        for resource in self._resources:
            await resource.shutdown()
        self._available = None

    @asynccontextmanager
    async def session(self, url: str) -> AsyncIterator[ExtractionSession]:
        origin = origin_of(url)
        await self.start()
        assert self._available is not None
        available = self._available
        resource = await available.get()
        self.leases += 1
        log.debug("Session leased", extra={"resource_id": resource.resource_id, "url": url})
        try:
            await resource.clear_state(origin)
            yield ExtractionSession(resource=resource, url=url, origin=origin)
        finally:
            try:
                await resource.clear_state(origin)
            finally:
                try:
                    await resource.release()
                finally:
                    available.put_nowait(resource)
                    log.debug("Session released", extra={"resource_id": resource.resource_id, "url": url})

    async def with_session(self, url: str, fn: Callable[[ExtractionSession], Awaitable[T]]) -> T:
        async with self.session(url) as lease:
            return await fn(lease)


__all__ = [
    "ExtractionSession",
    "ExtractionSessionManager",
    "PageSnapshot",
    "PlaywrightResource",
    "SessionResource",
    "origin_of",
]
