"""
Built-in seed strategies.

One brand-term template and one product-term template per platform and country
served, restricted to the platform's country domain with `site:`.
"""

from __future__ import annotations

from typing import List, Sequence

from discovery_engine.domain.models import Strategy, StrategyOrigin
from discovery_engine.platforms import PLATFORMS
from discovery_engine.strategies.store import StrategyStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

SEED_TEMPLATES: Sequence[str] = (
    'site:{domain} "planted" {city}',
    'site:{domain} "planted.chicken" {city}',
)


def seed_strategies(store: StrategyStore) -> List[Strategy]:
    """Add every missing seed strategy; existing ids are left untouched."""
    added: List[Strategy] = []
    for platform in PLATFORMS.values():
        for country, domain in sorted(platform.domains.items()):
            for index, template in enumerate(SEED_TEMPLATES, start=1):
                strategy_id = f"seed-{platform.name}-{country.lower()}-{index}"
                if store.get(strategy_id) is not None:
                    continue
                added.append(
                    store.create(
                        platform.name,
                        country,
                        # str.format would also consume the {city} placeholder.
                        template.replace("{domain}", domain),
                        origin=StrategyOrigin.SEED,
                        tags=["seed"],
                        strategy_id=strategy_id,
                    )
                )
    log.info("Seed strategies loaded", extra={"added": len(added), "total": len(store)})
    return added


__all__ = ["SEED_TEMPLATES", "seed_strategies"]
