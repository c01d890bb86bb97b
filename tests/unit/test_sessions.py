from __future__ import annotations

import asyncio

import pytest

from discovery_engine.domain.errors import TransientFetchError
from discovery_engine.sessions import ExtractionSessionManager, origin_of

VENUE_A = "https://wolt.com/de/deu/berlin/restaurant/green-bowl"
VENUE_B = "https://www.ubereats.com/de/store/vegan-palace/abc123"


def test_origin_of_requires_absolute_url() -> None:
    assert origin_of(VENUE_A) == "https://wolt.com"
    with pytest.raises(ValueError):
        origin_of("/relative/path")


def test_manager_needs_a_resource() -> None:
    with pytest.raises(ValueError):
        ExtractionSessionManager([])


@pytest.mark.asyncio
async def test_state_from_one_venue_never_reaches_the_next(fake_sessions, fake_browser) -> None:
    await fake_sessions.with_session(VENUE_A, lambda session: session.fetch())
    await fake_sessions.with_session(VENUE_B, lambda session: session.fetch())

    assert fake_browser.seen_state == [(VENUE_A, frozenset()), (VENUE_B, frozenset())]
    assert fake_browser.cookies == set()


@pytest.mark.asyncio
async def test_lease_clears_before_navigation_and_after_release(fake_sessions, fake_browser) -> None:
    snapshot = await fake_sessions.with_session(VENUE_A, lambda session: session.fetch())

    assert snapshot.final_url == VENUE_A
    assert fake_browser.events == [
        "start",
        "clear:https://wolt.com",
        f"fetch:{VENUE_A}",
        "clear:https://wolt.com",
        "release",
    ]
    assert fake_sessions.leases == 1


@pytest.mark.asyncio
async def test_resource_is_cleared_and_returned_when_fetch_fails(fake_sessions, fake_browser) -> None:
    fake_browser.fail_with = TransientFetchError("navigation failed")

    with pytest.raises(TransientFetchError):
        await fake_sessions.with_session(VENUE_A, lambda session: session.fetch())

    assert fake_browser.events[-2:] == ["clear:https://wolt.com", "release"]
    assert fake_browser.cookies == set()

    fake_browser.fail_with = None
    snapshot = await asyncio.wait_for(fake_sessions.with_session(VENUE_B, lambda session: session.fetch()), 1)
    assert snapshot.url == VENUE_B


@pytest.mark.asyncio
async def test_leases_are_exclusive(fake_sessions) -> None:
    active = 0
    peak = 0

    async def hold(session) -> str:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return session.url

    urls = await asyncio.gather(*(fake_sessions.with_session(url, hold) for url in (VENUE_A, VENUE_B, VENUE_A)))

    assert urls == [VENUE_A, VENUE_B, VENUE_A]
    assert peak == 1
    assert fake_sessions.leases == 3


@pytest.mark.asyncio
async def test_close_shuts_down_resources(fake_sessions, fake_browser) -> None:
    await fake_sessions.start()
    await fake_sessions.close()
    assert fake_browser.events == ["start", "shutdown"]
