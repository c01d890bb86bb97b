"""
Confidence scoring for venue and dish candidates.

Each score is a weighted sum over named factors. A factor contributes a
fraction (0..1) of its configured maximum points and always carries a reason
string, so every stored score can be explained factor by factor.

Weights are configuration. If they add up to more than 100 they are scaled
down proportionally, and each factor is clamped to its own maximum, so the
total can never leave [0, 100] and always equals the sum of its factors.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field

from discovery_engine.config import DEFAULT_DISH_FACTOR_WEIGHTS, DEFAULT_VENUE_FACTOR_WEIGHTS, Settings
from discovery_engine.domain.models import ConfidenceFactor, ConfidenceResult
from discovery_engine.platforms import PLATFORMS, is_venue_url, platform_from_url

VENUE_FACTORS = tuple(DEFAULT_VENUE_FACTOR_WEIGHTS)
DISH_FACTORS = tuple(DEFAULT_DISH_FACTOR_WEIGHTS)

# Share of the brand factor awarded for a generic category term.
GENERIC_TERM_CREDIT = 0.4
MENU_EVIDENCE_TARGET = 3
FULL_DESCRIPTION_CHARS = 40


class VenueSignals(BaseModel):
    url: str
    platform: Optional[str] = None
    name: str = ""
    snippet: str = ""
    description: str = ""
    strategy_success_rate: Optional[float] = Field(None, ge=0, le=100)
    menu_item_count: int = Field(0, ge=0)
    dish_names: List[str] = Field(default_factory=list)


class DishSignals(BaseModel):
    name: str
    description: str = ""
    price: Optional[str] = None
    product_guess: Optional[str] = None


def normalize_weights(weights: Mapping[str, float], known: Sequence[str]) -> Dict[str, float]:
    unknown = set(weights) - set(known)
    if unknown:
        raise ValueError(f"Unknown confidence factor(s): {', '.join(sorted(unknown))}")
    if any(value < 0 for value in weights.values()):
        raise ValueError("Confidence factor weights must be non-negative")
    total = sum(weights.values())
    scale = 100.0 / total if total > 100 else 1.0
    return {name: weights[name] * scale for name in known if name in weights}


def _contains(text: str, term: str) -> bool:
    return re.search(rf"(?<!\w){re.escape(term.casefold())}(?!\w)", text) is not None


class ConfidenceScorer:
    def __init__(
        self,
        venue_weights: Optional[Mapping[str, float]] = None,
        dish_weights: Optional[Mapping[str, float]] = None,
        *,
        brand_terms: Iterable[str] = ("planted",),
        generic_terms: Iterable[str] = (),
        product_names: Iterable[str] = (),
    ) -> None:
        self.venue_weights = normalize_weights(venue_weights or DEFAULT_VENUE_FACTOR_WEIGHTS, VENUE_FACTORS)
        self.dish_weights = normalize_weights(dish_weights or DEFAULT_DISH_FACTOR_WEIGHTS, DISH_FACTORS)
        self.brand_terms = [term.casefold() for term in brand_terms]
        self.generic_terms = [term.casefold() for term in generic_terms]
        self.product_names = [name.casefold() for name in product_names]

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfidenceScorer":
        return cls(
            settings.venue_factor_weights,
            settings.dish_factor_weights,
            brand_terms=settings.brand_terms,
            generic_terms=settings.generic_terms,
            product_names=settings.product_names,
        )

    # ------------------------------------------------------------------ helpers

    @staticmethod
    def _factor(weights: Dict[str, float], name: str, fraction: float, reason: str) -> ConfidenceFactor:
        weight = weights[name]
        score = round(min(max(fraction, 0.0), 1.0) * weight, 2)
        return ConfidenceFactor(name=name, score=score, max_score=round(weight, 2), reason=reason)

    @staticmethod
    def _result(factors: List[ConfidenceFactor]) -> ConfidenceResult:
        total = round(sum(factor.score for factor in factors), 2)
        return ConfidenceResult(score=min(max(total, 0.0), 100.0), factors=factors)

    def _brand(self, text: str) -> Tuple[float, str]:
        for term in self.brand_terms:
            if _contains(text, term):
                return 1.0, f"explicit brand mention '{term}'"
        for term in self.generic_terms:
            if _contains(text, term):
                return GENERIC_TERM_CREDIT, f"generic term '{term}' without brand"
        return 0.0, "no brand or category term found"

    # ------------------------------------------------------------------ venues

    def score_venue(self, signals: VenueSignals) -> ConfidenceResult:
        weights = self.venue_weights
        text = " ".join([signals.name, signals.snippet, signals.description, *signals.dish_names]).casefold()
        factors: List[ConfidenceFactor] = []

        if "brand_mention" in weights:
            fraction, reason = self._brand(text)
            factors.append(self._factor(weights, "brand_mention", fraction, reason))

        if "url_pattern" in weights:
            platform = signals.platform or platform_from_url(signals.url)
            if platform in PLATFORMS and is_venue_url(platform, signals.url):
                fraction, reason = 1.0, f"matches {platform} venue URL pattern"
            elif platform in PLATFORMS:
                fraction, reason = 0.25, f"{platform} domain but not a venue page"
            else:
                fraction, reason = 0.0, "URL does not belong to a known platform"
            factors.append(self._factor(weights, "url_pattern", fraction, reason))

        if "strategy_quality" in weights:
            if signals.strategy_success_rate is None:
                fraction, reason = 0.5, "no parent strategy; neutral credit"
            else:
                fraction = signals.strategy_success_rate / 100.0
                reason = f"parent strategy success rate {signals.strategy_success_rate:.1f}%"
            factors.append(self._factor(weights, "strategy_quality", fraction, reason))

        if "menu_evidence" in weights:
            count = signals.menu_item_count
            factors.append(
                self._factor(
                    weights,
                    "menu_evidence",
                    count / MENU_EVIDENCE_TARGET,
                    f"{count} matching menu item(s)" if count else "no matching menu items seen",
                )
            )

        if "description_completeness" in weights:
            present = [label for label, value in (("name", signals.name), ("snippet", signals.snippet),
                                                  ("description", signals.description)) if value.strip()]
            factors.append(
                self._factor(
                    weights,
                    "description_completeness",
                    len(present) / 3,
                    f"has {', '.join(present)}" if present else "no descriptive text",
                )
            )

        return self._result(factors)

    # ------------------------------------------------------------------ dishes

    def score_dish(self, signals: DishSignals) -> ConfidenceResult:
        weights = self.dish_weights
        text = " ".join([signals.name, signals.description]).casefold()
        factors: List[ConfidenceFactor] = []

        if "brand_mention" in weights:
            fraction, reason = self._brand(text)
            factors.append(self._factor(weights, "brand_mention", fraction, reason))

        if "product_match" in weights:
            haystack = f"{text} {(signals.product_guess or '').casefold()}"
            matched = next((name for name in self.product_names if name in haystack), None)
            if matched:
                fraction, reason = 1.0, f"matches product '{matched}'"
            elif signals.product_guess:
                fraction, reason = 0.5, f"unconfirmed product guess '{signals.product_guess}'"
            else:
                fraction, reason = 0.0, "no product identified"
            factors.append(self._factor(weights, "product_match", fraction, reason))

        if "price_visibility" in weights:
            visible = bool(signals.price and re.search(r"\d", signals.price))
            factors.append(
                self._factor(
                    weights,
                    "price_visibility",
                    1.0 if visible else 0.0,
                    f"price shown ({signals.price})" if visible else "no price shown",
                )
            )

        if "description_completeness" in weights:
            length = len(signals.description.strip())
            if length >= FULL_DESCRIPTION_CHARS:
                fraction, reason = 1.0, "full description"
            elif length:
                fraction, reason = 0.5, "short description"
            else:
                fraction, reason = 0.0, "no description"
            factors.append(self._factor(weights, "description_completeness", fraction, reason))

        return self._result(factors)


__all__ = [
    "ConfidenceScorer",
    "DISH_FACTORS",
    "DishSignals",
    "VENUE_FACTORS",
    "VenueSignals",
    "normalize_weights",
]
