from __future__ import annotations

import pytest

from discovery_engine.scoring import (
    DISH_FACTORS,
    VENUE_FACTORS,
    ConfidenceScorer,
    DishSignals,
    VenueSignals,
    normalize_weights,
)

VENUE_URL = "https://wolt.com/de/deu/berlin/restaurant/green-bowl"


@pytest.fixture
def scorer() -> ConfidenceScorer:
    return ConfidenceScorer(
        brand_terms=["planted"],
        generic_terms=["vegan chicken"],
        product_names=["planted.chicken", "planted.kebab"],
    )


def test_strong_venue_scores_every_factor(scorer) -> None:
    result = scorer.score_venue(
        VenueSignals(
            url=VENUE_URL,
            name="Green Bowl",
            snippet="Bowls with planted.chicken",
            description="Healthy bowls in Mitte",
            strategy_success_rate=80.0,
            menu_item_count=3,
        )
    )

    by_name = {factor.name: factor for factor in result.factors}
    assert set(by_name) == set(VENUE_FACTORS)
    assert by_name["brand_mention"].score == 35.0
    assert by_name["url_pattern"].score == 20.0
    assert by_name["strategy_quality"].score == 16.0
    assert by_name["menu_evidence"].score == 15.0
    assert by_name["description_completeness"].score == 10.0
    assert result.score == pytest.approx(96.0)


def test_score_is_always_the_sum_of_its_factors(scorer) -> None:
    samples = [
        VenueSignals(url="https://example.com/menu"),
        VenueSignals(url="https://wolt.com/de/deu/berlin", snippet="vegan chicken wraps"),
        VenueSignals(url=VENUE_URL, name="X", menu_item_count=10, strategy_success_rate=100.0),
    ]
    for signals in samples:
        result = scorer.score_venue(signals)
        assert result.score == pytest.approx(sum(f.score for f in result.factors))
        assert 0 <= result.score <= 100
        assert all(f.reason for f in result.factors)
        assert all(0 <= f.score <= f.max_score for f in result.factors)


def test_removing_a_factor_lowers_score_by_its_contribution(scorer) -> None:
    result = scorer.score_venue(VenueSignals(url=VENUE_URL, snippet="planted kebab"))
    brand = next(f for f in result.factors if f.name == "brand_mention")
    assert result.total_without("brand_mention") == pytest.approx(result.score - brand.score)


def test_generic_term_earns_partial_brand_credit(scorer) -> None:
    result = scorer.score_venue(VenueSignals(url=VENUE_URL, snippet="Best vegan chicken in town"))
    brand = next(f for f in result.factors if f.name == "brand_mention")
    assert brand.score == pytest.approx(35.0 * 0.4)
    assert "generic term" in brand.reason


def test_non_venue_pages_get_partial_url_credit(scorer) -> None:
    listing = scorer.score_venue(VenueSignals(url="https://wolt.com/de/deu/berlin"))
    unknown = scorer.score_venue(VenueSignals(url="https://example.com/menu"))
    listing_url, unknown_url = (
        next(f for f in result.factors if f.name == "url_pattern") for result in (listing, unknown)
    )
    assert listing_url.score == pytest.approx(5.0)
    assert "not a venue page" in listing_url.reason
    assert unknown_url.score == 0.0


def test_dish_scoring(scorer) -> None:
    result = scorer.score_dish(
        DishSignals(
            name="Planted Chicken Bowl",
            description="Crispy planted.chicken with rice, greens and a sesame dressing",
            price="€12.50",
        )
    )
    by_name = {factor.name: factor.score for factor in result.factors}
    assert set(by_name) == set(DISH_FACTORS)
    assert result.score == pytest.approx(100.0)

    bare = scorer.score_dish(DishSignals(name="Falafel wrap", product_guess="planted.kebab?"))
    bare_by_name = {factor.name: factor for factor in bare.factors}
    assert bare_by_name["product_match"].score == pytest.approx(25.0)
    assert bare_by_name["price_visibility"].score == 0.0
    assert bare_by_name["description_completeness"].reason == "no description"


def test_weights_over_one_hundred_are_scaled_down() -> None:
    normalized = normalize_weights({"brand_mention": 100.0, "url_pattern": 100.0}, VENUE_FACTORS)
    assert normalized == {"brand_mention": 50.0, "url_pattern": 50.0}

    scorer = ConfidenceScorer({"brand_mention": 150.0, "url_pattern": 150.0})
    result = scorer.score_venue(VenueSignals(url=VENUE_URL, snippet="planted"))
    assert result.score == pytest.approx(100.0)
    assert {f.name for f in result.factors} == {"brand_mention", "url_pattern"}


def test_invalid_weights_are_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown confidence factor"):
        normalize_weights({"vibes": 10.0}, VENUE_FACTORS)
    with pytest.raises(ValueError, match="non-negative"):
        normalize_weights({"brand_mention": -1.0}, VENUE_FACTORS)


def test_from_settings_uses_configured_terms(test_settings) -> None:
    scorer = ConfidenceScorer.from_settings(test_settings)
    assert scorer.brand_terms == [term.casefold() for term in test_settings.brand_terms]
    assert sum(scorer.venue_weights.values()) <= 100
