"""
Strategy store and learning loop.

Owns every query template the engine knows about, ranks the eligible ones for
a platform/country target, and folds each execution outcome back into the
template's counters. Success rate is never written directly: it is derived by
`Strategy.success_rate` from the counters and a neutral prior.

Deprecated strategies are kept for audit, never deleted.
"""

from __future__ import annotations

import threading
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from discovery_engine.config import Settings
from discovery_engine.domain.models import Strategy, StrategyOrigin, StrategyOutcome, utc_now
from discovery_engine.infrastructure.document_store import STRATEGIES, DocumentStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

# Minimum sample before a strategy is ranked among top or struggling performers.
STATS_MIN_USES = 5
STRUGGLING_BELOW = 50.0


class StrategyStats(BaseModel):
    total_strategies: int = 0
    active_strategies: int = 0
    deprecated_strategies: int = 0
    average_success_rate: float = 0.0
    total_uses: int = 0
    total_discoveries: int = 0
    total_false_positives: int = 0
    tiers: Dict[str, int] = Field(default_factory=lambda: {"high": 0, "medium": 0, "low": 0, "untested": 0})
    by_origin: Dict[str, int] = Field(default_factory=dict)
    by_platform: Dict[str, int] = Field(default_factory=dict)
    by_country: Dict[str, int] = Field(default_factory=dict)
    top_strategies: List[Strategy] = Field(default_factory=list)
    struggling_strategies: List[Strategy] = Field(default_factory=list)


def replace_strategy(strategy: Strategy, **changes: Any) -> Strategy:
    """Return a revalidated copy of a frozen strategy with `changes` applied."""
    data = strategy.model_dump(exclude={"success_rate"})
    data.update(changes)
    return Strategy.model_validate(data)


def _document(strategy: Strategy) -> Dict[str, Any]:
    document = strategy.model_dump(mode="json")
    document["status"] = "deprecated" if strategy.is_deprecated else "active"
    return document


class StrategyStore:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        *,
        min_success_rate: float = 20.0,
        deprecation_min_uses: int = 10,
        recency_weight: float = 0.3,
        recency_half_life_days: float = 14.0,
        neutral_prior: float = 50.0,
        prior_weight: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if not 0 <= recency_weight <= 1:
            raise ValueError("recency_weight must be within [0, 1]")
        self._store = store
        self.min_success_rate = min_success_rate
        self.deprecation_min_uses = deprecation_min_uses
        self.recency_weight = recency_weight
        self.recency_half_life_days = recency_half_life_days
        self.neutral_prior = neutral_prior
        self.prior_weight = prior_weight
        self._clock = clock
        self._strategies: Dict[str, Strategy] = {}
        self._lock = threading.RLock()
        if store is not None:
            for document in store.list(STRATEGIES):
                strategy = Strategy.model_validate(document)
                self._strategies[strategy.id] = strategy

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "StrategyStore":
        return cls(
            store,
            min_success_rate=settings.strategy_min_success_rate,
            deprecation_min_uses=settings.strategy_deprecation_min_uses,
            recency_weight=settings.strategy_recency_weight,
            recency_half_life_days=settings.strategy_recency_half_life_days,
            neutral_prior=settings.strategy_neutral_prior,
            prior_weight=settings.strategy_prior_weight,
            clock=clock,
        )

    def _save(self, strategy: Strategy) -> Strategy:
        self._strategies[strategy.id] = strategy
        if self._store is not None:
            self._store.put(STRATEGIES, strategy.id, _document(strategy))
        return strategy

    # ------------------------------------------------------------------ CRUD

    def add(self, strategy: Strategy) -> Strategy:
        with self._lock:
            if strategy.id in self._strategies:
                raise ValueError(f"Strategy '{strategy.id}' already exists")
            return self._save(strategy)

    def create(
        self,
        platform: str,
        country: str,
        query_template: str,
        *,
        origin: StrategyOrigin = StrategyOrigin.SEED,
        parent_strategy_id: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        strategy_id: Optional[str] = None,
    ) -> Strategy:
        """Build a fresh strategy seeded with the neutral prior and store it."""
        strategy = Strategy(
            id=strategy_id or f"{platform}-{country.lower()}-{uuid.uuid4().hex[:8]}",
            platform=platform,
            country=country.upper(),
            query_template=query_template,
            origin=origin,
            parent_strategy_id=parent_strategy_id,
            tags=list(tags or []),
            prior_success_rate=self.neutral_prior,
            prior_weight=self.prior_weight,
            created_at=self._clock(),
        )
        return self.add(strategy)

    def get(self, strategy_id: str) -> Optional[Strategy]:
        with self._lock:
            return self._strategies.get(strategy_id)

    def all(self, include_deprecated: bool = True) -> List[Strategy]:
        with self._lock:
            strategies = list(self._strategies.values())
        if not include_deprecated:
            strategies = [s for s in strategies if not s.is_deprecated]
        return sorted(strategies, key=lambda s: s.id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._strategies)

    # ------------------------------------------------------------------ selection

    def recency_score(self, strategy: Strategy, now: Optional[datetime] = None) -> float:
        """100 for a strategy touched just now, halving every `recency_half_life_days`."""
        now = now or self._clock()
        reference = strategy.last_used_at or strategy.created_at
        age_days = max((now - reference).total_seconds(), 0.0) / 86_400
        if self.recency_half_life_days <= 0:
            return 0.0
        return 100.0 * 0.5 ** (age_days / self.recency_half_life_days)

    def ranking_score(self, strategy: Strategy, now: Optional[datetime] = None) -> float:
        blended = (1 - self.recency_weight) * strategy.success_rate
        return blended + self.recency_weight * self.recency_score(strategy, now)

    def select_eligible(self, platform: str, country: str, limit: Optional[int] = None) -> List[Strategy]:
        """
        Active strategies for one target at or above the success-rate floor.

        Ordered by a blend of success rate and recency so that a template that
        was good months ago does not permanently outrank fresher ones.
        """
        now = self._clock()
        with self._lock:
            eligible = [
                s
                for s in self._strategies.values()
                if s.platform == platform
                and s.country == country.upper()
                and not s.is_deprecated
                and s.success_rate >= self.min_success_rate
            ]
        eligible.sort(key=lambda s: (-self.ranking_score(s, now), s.id))
        return eligible[:limit] if limit is not None else eligible

    # ------------------------------------------------------------------ learning

    def record_outcome(self, strategy_id: str, outcome: StrategyOutcome) -> Strategy:
        outcome = StrategyOutcome(outcome)
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                raise KeyError(f"Unknown strategy '{strategy_id}'")

            updated = replace_strategy(
                strategy,
                total_uses=strategy.total_uses + 1,
                successful_discoveries=strategy.successful_discoveries
                + (1 if outcome is StrategyOutcome.SUCCESS else 0),
                false_positives=strategy.false_positives
                + (1 if outcome is StrategyOutcome.FALSE_POSITIVE else 0),
                last_used_at=self._clock(),
            )
            if (
                not updated.is_deprecated
                and updated.total_uses >= self.deprecation_min_uses
                and updated.success_rate < self.min_success_rate
            ):
                updated = replace_strategy(
                    updated,
                    deprecated_at=self._clock(),
                    deprecation_reason=(
                        f"success rate {updated.success_rate:.1f}% below "
                        f"{self.min_success_rate:.1f}% after {updated.total_uses} uses"
                    ),
                )
                log.info(
                    f"[STRATEGY DEPRECATED] {strategy_id}",
                    extra={"strategy_id": strategy_id, "success_rate": updated.success_rate},
                )
            self._save(updated)

        log.debug(
            "Strategy outcome recorded",
            extra={"strategy_id": strategy_id, "outcome": outcome.value, "success_rate": updated.success_rate},
        )
        return updated

    def deprecate(self, strategy_id: str, reason: str) -> Strategy:
        with self._lock:
            strategy = self._strategies.get(strategy_id)
            if strategy is None:
                raise KeyError(f"Unknown strategy '{strategy_id}'")
            if strategy.is_deprecated:
                return strategy
            return self._save(
                replace_strategy(strategy, deprecated_at=self._clock(), deprecation_reason=reason)
            )

    # ------------------------------------------------------------------ reporting

    def stats(self) -> StrategyStats:
        strategies = self.all()
        active = [s for s in strategies if not s.is_deprecated]
        stats = StrategyStats(
            total_strategies=len(strategies),
            active_strategies=len(active),
            deprecated_strategies=len(strategies) - len(active),
        )

        weighted = sum(s.success_rate * s.total_uses for s in active)
        uses = sum(s.total_uses for s in active)
        stats.average_success_rate = round(weighted / uses, 2) if uses else 0.0
        stats.total_uses = uses
        stats.total_discoveries = sum(s.successful_discoveries for s in active)
        stats.total_false_positives = sum(s.false_positives for s in active)

        for strategy in active:
            tier = strategy.tier(STATS_MIN_USES)
            stats.tiers[tier] = stats.tiers.get(tier, 0) + 1
            origin = strategy.origin.value
            stats.by_origin[origin] = stats.by_origin.get(origin, 0) + 1
            stats.by_platform[strategy.platform] = stats.by_platform.get(strategy.platform, 0) + 1
            stats.by_country[strategy.country] = stats.by_country.get(strategy.country, 0) + 1

        sampled = [s for s in active if s.total_uses >= STATS_MIN_USES]
        stats.top_strategies = sorted(sampled, key=lambda s: -s.success_rate)[:5]
        stats.struggling_strategies = sorted(
            (s for s in sampled if s.success_rate < STRUGGLING_BELOW), key=lambda s: s.success_rate
        )[:5]
        return stats


__all__ = ["STATS_MIN_USES", "StrategyStats", "StrategyStore", "replace_strategy"]
