from __future__ import annotations

from discovery_engine.domain.models import StrategyOrigin, StrategyOutcome
from discovery_engine.strategies import StrategyStore, evolve
from discovery_engine.strategies.evolution import high_performers, recombine, transplant


def _proven(store: StrategyStore, strategy_id: str, country: str, template: str, successes: int = 6):
    strategy = store.create("wolt", country, template, strategy_id=strategy_id)
    for _ in range(successes):
        strategy = store.record_outcome(strategy.id, StrategyOutcome.SUCCESS)
    return strategy


def test_transplant_rewrites_site_domain(clock) -> None:
    store = StrategyStore(clock=clock)
    parent = _proven(store, "p", "DE", 'site:wolt.com/de "planted" {city}')
    assert transplant(parent, "AT") == 'site:wolt.com/at "planted" {city}'
    assert transplant(parent, "FR") is None


def test_recombine_appends_missing_quoted_terms(clock) -> None:
    store = StrategyStore(clock=clock)
    first = _proven(store, "a", "DE", 'site:wolt.com/de "planted" {city}')
    second = _proven(store, "b", "DE", 'site:wolt.com/de "Planted" "kebab" {city}')
    assert recombine(first, second) == 'site:wolt.com/de "planted" {city} "kebab"'
    assert recombine(second, first) is None


def test_high_performers_need_rate_and_sample(clock) -> None:
    store = StrategyStore(clock=clock)
    _proven(store, "proven", "DE", 'site:wolt.com/de "planted" {city}')
    _proven(store, "thin", "DE", 'site:wolt.com/de "vegan" {city}', successes=2)
    clusters = high_performers(store, min_success_rate=60.0, min_uses=5)
    assert [s.id for s in clusters["wolt"]] == ["proven"]


def test_evolve_creates_tagged_children_without_duplicates(clock) -> None:
    store = StrategyStore(clock=clock)
    parent = _proven(store, "parent", "DE", 'site:wolt.com/de "planted" {city}')
    store.create("wolt", "AT", 'site:wolt.com/at "planted" {city}', strategy_id="existing-at")

    created = evolve(store, min_success_rate=60.0, min_uses=5)

    assert [(s.country, s.query_template) for s in created] == [("PL", 'site:wolt.com/pl "planted" {city}')]
    child = created[0]
    assert child.origin is StrategyOrigin.EVOLVED
    assert child.parent_strategy_id == parent.id
    assert "evolved" in child.tags
    assert child.total_uses == 0
    assert child.success_rate == store.neutral_prior

    assert evolve(store, min_success_rate=60.0, min_uses=5) == []


def test_evolve_respects_max_new(clock) -> None:
    store = StrategyStore(clock=clock)
    _proven(store, "a", "DE", 'site:wolt.com/de "planted" {city}')
    _proven(store, "b", "DE", 'site:wolt.com/de "kebab" {city}')
    created = evolve(store, min_success_rate=60.0, min_uses=5, max_new=1)
    assert len(created) == 1
