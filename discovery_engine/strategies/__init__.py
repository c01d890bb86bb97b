"""
Strategies package: query templates, their learning loop and query construction.

Re-exports the store, the batching transform, the evolution step and the seed
catalogue so callers can import from `discovery_engine.strategies` directly.
"""

from discovery_engine.strategies.batching import BatchedQuery, build_batched_queries, render_template
from discovery_engine.strategies.evolution import evolve
from discovery_engine.strategies.seeds import SEED_TEMPLATES, seed_strategies
from discovery_engine.strategies.store import StrategyStats, StrategyStore, replace_strategy

__all__ = [
    # Learning
    "StrategyStats",
    "StrategyStore",
    "evolve",
    "replace_strategy",
    # Query construction
    "BatchedQuery",
    "build_batched_queries",
    "render_template",
    # Seeds
    "SEED_TEMPLATES",
    "seed_strategies",
]
