"""
Query construction: strategy template + cities -> concrete search queries.

Cities that share a strategy are grouped into batches and combined into one
disjunctive query instead of issuing one query per city. A batch of one is
plain `{city}` substitution. Pure functions, no side effects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence, Tuple

from discovery_engine.domain.models import Strategy

CITY_PLACEHOLDER = "{city}"


@dataclass(frozen=True)
class BatchedQuery:
    strategy_id: str
    platform: str
    country: str
    query: str
    cities: Tuple[str, ...]


def _quote(city: str) -> str:
    return f'"{city}"' if " " in city else city


def render_template(template: str, cities: Sequence[str]) -> str:
    """
    Substitute one city, or an `(A OR B OR "New York")` group for several.
    """
    if not cities:
        raise ValueError("at least one city is required")
    if len(cities) == 1:
        return template.replace(CITY_PLACEHOLDER, cities[0])
    group = "(" + " OR ".join(_quote(city) for city in cities) + ")"
    return template.replace(CITY_PLACEHOLDER, group)


def chunk(items: Sequence[str], size: int) -> List[Tuple[str, ...]]:
    if size < 1:
        raise ValueError("batch size must be >= 1")
    return [tuple(items[i : i + size]) for i in range(0, len(items), size)]


def build_batched_queries(
    strategies: Sequence[Strategy],
    cities: Sequence[str],
    batch_size: int = 3,
) -> List[BatchedQuery]:
    # Dedupe cities case-insensitively, keeping first spelling and order.
    seen = set()
    unique: List[str] = []
    for city in cities:
        cleaned = " ".join(city.split())
        if cleaned and cleaned.casefold() not in seen:
            seen.add(cleaned.casefold())
            unique.append(cleaned)

    queries: List[BatchedQuery] = []
    for strategy in strategies:
        for batch in chunk(unique, batch_size):
            queries.append(
                BatchedQuery(
                    strategy_id=strategy.id,
                    platform=strategy.platform,
                    country=strategy.country,
                    query=render_template(strategy.query_template, batch),
                    cities=batch,
                )
            )
    return queries


__all__ = ["BatchedQuery", "CITY_PLACEHOLDER", "build_batched_queries", "chunk", "render_template"]
