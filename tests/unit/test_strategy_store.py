from __future__ import annotations

import pytest
from pydantic import ValidationError

from discovery_engine.domain.models import Strategy, StrategyOrigin, StrategyOutcome
from discovery_engine.infrastructure.document_store import STRATEGIES
from discovery_engine.strategies import StrategyStore, replace_strategy, seed_strategies
from discovery_engine.strategies.seeds import SEED_TEMPLATES

TEMPLATE = 'site:wolt.com/de "planted" {city}'


def _store(clock, store=None, **kwargs) -> StrategyStore:
    kwargs.setdefault("recency_weight", 0.0)
    return StrategyStore(store, clock=clock, **kwargs)


def test_new_strategy_starts_at_neutral_prior(clock) -> None:
    store = _store(clock)
    strategy = store.create("wolt", "de", TEMPLATE)
    assert strategy.country == "DE"
    assert strategy.total_uses == 0
    assert strategy.success_rate == pytest.approx(50.0)
    assert strategy.tier(5) == "untested"


def test_counters_cannot_exceed_total_uses() -> None:
    with pytest.raises(ValidationError):
        Strategy(id="s", platform="wolt", country="DE", query_template=TEMPLATE, total_uses=1, successful_discoveries=2)
    with pytest.raises(ValidationError):
        Strategy(id="s", platform="wolt", country="DE", query_template="no placeholder")


def test_success_rate_is_derived_and_bounded(clock) -> None:
    store = _store(clock)
    strategy = store.create("wolt", "DE", TEMPLATE)
    for _ in range(8):
        strategy = store.record_outcome(strategy.id, StrategyOutcome.SUCCESS)
    assert strategy.total_uses == 8
    assert strategy.successful_discoveries == 8
    assert strategy.success_rate == pytest.approx(90.0)
    assert 0 <= strategy.success_rate <= 100


def test_false_positive_counts_as_use_without_discovery(clock) -> None:
    store = _store(clock)
    strategy = store.create("wolt", "DE", TEMPLATE)
    updated = store.record_outcome(strategy.id, StrategyOutcome.FALSE_POSITIVE)
    assert (updated.total_uses, updated.successful_discoveries, updated.false_positives) == (1, 0, 1)
    assert updated.last_used_at == clock()


def test_strategy_auto_deprecates_after_enough_failures(clock) -> None:
    store = _store(clock, min_success_rate=20.0, deprecation_min_uses=10)
    strategy = store.create("wolt", "DE", TEMPLATE)

    for _ in range(9):
        strategy = store.record_outcome(strategy.id, StrategyOutcome.NO_RESULT)
    assert not strategy.is_deprecated

    strategy = store.record_outcome(strategy.id, StrategyOutcome.NO_RESULT)
    assert strategy.is_deprecated
    assert "below" in strategy.deprecation_reason
    assert store.select_eligible("wolt", "DE") == []
    assert store.get(strategy.id) is not None


def test_record_outcome_for_unknown_strategy_raises(clock) -> None:
    with pytest.raises(KeyError):
        _store(clock).record_outcome("missing", StrategyOutcome.SUCCESS)


def test_select_eligible_filters_target_and_orders_by_rate(clock) -> None:
    store = _store(clock)
    strong = store.create("wolt", "DE", TEMPLATE, strategy_id="strong")
    weak = store.create("wolt", "DE", 'site:wolt.com/de "vegan" {city}', strategy_id="weak")
    store.create("wolt", "AT", 'site:wolt.com/at "planted" {city}', strategy_id="other-country")
    store.create("uber_eats", "DE", 'site:ubereats.com/de "planted" {city}', strategy_id="other-platform")

    for _ in range(3):
        store.record_outcome(strong.id, StrategyOutcome.SUCCESS)
    for _ in range(2):
        store.record_outcome(weak.id, StrategyOutcome.NO_RESULT)

    eligible = store.select_eligible("wolt", "de")
    assert [s.id for s in eligible] == ["strong", "weak"]
    assert [s.id for s in store.select_eligible("wolt", "DE", limit=1)] == ["strong"]


def test_recency_lifts_recently_used_strategy(clock) -> None:
    store = _store(clock, recency_weight=0.5, recency_half_life_days=7)
    stale = store.create("wolt", "DE", TEMPLATE, strategy_id="stale")
    fresh = store.create("wolt", "DE", 'site:wolt.com/de "vegan" {city}', strategy_id="fresh")
    store.record_outcome(stale.id, StrategyOutcome.SUCCESS)

    clock.advance(days=60)
    store.record_outcome(fresh.id, StrategyOutcome.NO_RESULT)

    assert store.get("stale").success_rate > store.get("fresh").success_rate
    assert [s.id for s in store.select_eligible("wolt", "DE")] == ["fresh", "stale"]


def test_recency_weight_must_be_a_fraction(clock) -> None:
    with pytest.raises(ValueError):
        StrategyStore(recency_weight=1.5, clock=clock)


def test_strategies_persist_with_status(clock, memory_store) -> None:
    store = _store(clock, memory_store)
    strategy = store.create("wolt", "DE", TEMPLATE, strategy_id="persisted")
    store.deprecate(strategy.id, "manual review")

    assert [doc["id"] for doc in memory_store.list(STRATEGIES, status="deprecated")] == ["persisted"]
    reloaded = _store(clock, memory_store)
    assert reloaded.get("persisted").deprecation_reason == "manual review"


def test_replace_strategy_revalidates(clock) -> None:
    strategy = _store(clock).create("wolt", "DE", TEMPLATE)
    with pytest.raises(ValidationError):
        replace_strategy(strategy, successful_discoveries=1)


def test_stats_summarize_active_strategies(clock) -> None:
    store = _store(clock)
    good = store.create("wolt", "DE", TEMPLATE, strategy_id="good")
    bad = store.create("wolt", "DE", 'site:wolt.com/de "vegan" {city}', strategy_id="bad")
    store.create("wolt", "AT", 'site:wolt.com/at "planted" {city}', origin=StrategyOrigin.MANUAL)
    for _ in range(6):
        store.record_outcome(good.id, StrategyOutcome.SUCCESS)
        store.record_outcome(bad.id, StrategyOutcome.NO_RESULT)

    stats = store.stats()

    assert stats.total_strategies == 3
    assert stats.active_strategies == 3
    assert stats.total_uses == 12
    assert stats.total_discoveries == 6
    assert stats.tiers["high"] == 1
    assert stats.tiers["low"] == 1
    assert stats.tiers["untested"] == 1
    assert stats.by_origin == {"seed": 2, "manual": 1}
    assert [s.id for s in stats.top_strategies] == ["good", "bad"]
    assert [s.id for s in stats.struggling_strategies] == ["bad"]


def test_seed_strategies_is_idempotent(clock) -> None:
    store = _store(clock)
    added = seed_strategies(store)
    assert added
    assert len(added) % len(SEED_TEMPLATES) == 0
    assert all("{city}" in s.query_template and "{domain}" not in s.query_template for s in added)
    assert store.get("seed-wolt-de-1").query_template == 'site:wolt.com/de "planted" {city}'
    assert seed_strategies(store) == []
