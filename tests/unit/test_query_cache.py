from __future__ import annotations

from datetime import timedelta

from discovery_engine.infrastructure.document_store import QUERY_CACHE
from discovery_engine.query_cache import QueryDedupCache, normalize_query

QUERY = 'site:wolt.com/de "planted" Berlin'


def test_normalize_query_ignores_case_and_term_order() -> None:
    assert normalize_query('Berlin "planted"  site:wolt.com/de') == normalize_query(QUERY)
    assert normalize_query("  A   b ") == "a b"


def test_query_with_results_is_skipped_for_positive_window(clock) -> None:
    cache = QueryDedupCache(positive_ttl=timedelta(hours=24), negative_ttl=timedelta(days=7), clock=clock)
    assert cache.should_skip(QUERY) is False

    cache.record(QUERY, had_results=True)
    clock.advance(hours=23)
    assert cache.should_skip(QUERY.upper()) is True

    clock.advance(hours=2)
    assert cache.should_skip(QUERY) is False


def test_query_without_results_is_skipped_for_negative_window(clock) -> None:
    cache = QueryDedupCache(positive_ttl=timedelta(hours=24), negative_ttl=timedelta(days=7), clock=clock)
    cache.record(QUERY, had_results=False)

    clock.advance(days=6)
    assert cache.should_skip(QUERY) is True
    clock.advance(days=1, seconds=1)
    assert cache.should_skip(QUERY) is False
    assert len(cache) == 0


def test_rerecording_refreshes_entry(clock) -> None:
    cache = QueryDedupCache(clock=clock)
    cache.record(QUERY, had_results=False)
    clock.advance(days=6)
    cache.record(QUERY, had_results=True)
    clock.advance(hours=23)
    assert cache.should_skip(QUERY) is True


def test_entries_survive_through_store_and_expire_there(clock, memory_store) -> None:
    cache = QueryDedupCache(store=memory_store, clock=clock)
    cache.record(QUERY, had_results=True)

    reloaded = QueryDedupCache(store=memory_store, clock=clock)
    assert reloaded.should_skip(QUERY) is True

    clock.advance(days=2)
    assert reloaded.purge_expired() == 1
    assert memory_store.get(QUERY_CACHE, normalize_query(QUERY)) is None
