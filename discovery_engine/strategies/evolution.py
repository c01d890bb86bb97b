"""
Strategy evolution.

A periodic step, separate from run execution, that looks at clusters of
high-performing strategies (grouped by platform) and proposes new templates:

- transplant: a proven template moved to another country the platform serves,
  with its `site:` domain rewritten for that country;
- recombination: two proven templates for the same target merged, carrying the
  quoted search terms of the second into the first.

New strategies are tagged `evolved`, point at their parent, and start from the
store's neutral prior. Templates that duplicate an existing one (after query
normalization) are never proposed.
"""

from __future__ import annotations

import itertools
import re
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from discovery_engine.domain.models import Strategy, StrategyOrigin
from discovery_engine.platforms import PLATFORMS, site_domain
from discovery_engine.query_cache import normalize_query
from discovery_engine.strategies.store import StrategyStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

_QUOTED_TERM = re.compile(r'"([^"]+)"')

TemplateKey = Tuple[str, str, str]


def _key(platform: str, country: str, template: str) -> TemplateKey:
    return platform, country.upper(), normalize_query(template)


def high_performers(store: StrategyStore, min_success_rate: float, min_uses: int) -> Dict[str, List[Strategy]]:
    clusters: Dict[str, List[Strategy]] = defaultdict(list)
    for strategy in store.all(include_deprecated=False):
        if strategy.total_uses >= min_uses and strategy.success_rate >= min_success_rate:
            clusters[strategy.platform].append(strategy)
    for members in clusters.values():
        members.sort(key=lambda s: (-s.success_rate, s.id))
    return dict(clusters)


def transplant(strategy: Strategy, country: str) -> Optional[str]:
    """Rewrite a template for another country; None when the platform does not serve it."""
    target_domain = site_domain(strategy.platform, country)
    if target_domain is None:
        return None
    source_domain = site_domain(strategy.platform, strategy.country)
    template = strategy.query_template
    if source_domain and source_domain in template:
        template = template.replace(source_domain, target_domain)
    return template


def recombine(primary: Strategy, secondary: Strategy) -> Optional[str]:
    """Append the secondary template's quoted terms missing from the primary."""
    present = {term.casefold() for term in _QUOTED_TERM.findall(primary.query_template)}
    extra = [term for term in _QUOTED_TERM.findall(secondary.query_template) if term.casefold() not in present]
    if not extra:
        return None
    return primary.query_template + " " + " ".join(f'"{term}"' for term in extra)


def evolve(
    store: StrategyStore,
    *,
    min_success_rate: float = 60.0,
    min_uses: int = 5,
    max_new: int = 10,
) -> List[Strategy]:
    """Synthesize new strategies from the current high performers."""
    existing: Set[TemplateKey] = {_key(s.platform, s.country, s.query_template) for s in store.all()}
    created: List[Strategy] = []

    def propose(parent: Strategy, country: str, template: Optional[str], how: str) -> None:
        if template is None or len(created) >= max_new:
            return
        key = _key(parent.platform, country, template)
        if key in existing:
            return
        existing.add(key)
        strategy = store.create(
            parent.platform,
            country,
            template,
            origin=StrategyOrigin.EVOLVED,
            parent_strategy_id=parent.id,
            tags=["evolved", how],
        )
        created.append(strategy)
        log.info(
            f"[STRATEGY EVOLVED] {strategy.id}",
            extra={"strategy_id": strategy.id, "parent_strategy_id": parent.id, "method": how},
        )

    for platform, members in sorted(high_performers(store, min_success_rate, min_uses).items()):
        served = PLATFORMS[platform].countries if platform in PLATFORMS else []
        for parent in members:
            for country in served:
                if country != parent.country:
                    propose(parent, country, transplant(parent, country), "transplant")

        by_target: Dict[str, List[Strategy]] = defaultdict(list)
        for member in members:
            by_target[member.country].append(member)
        for country, group in sorted(by_target.items()):
            for primary, secondary in itertools.permutations(group, 2):
                propose(primary, country, recombine(primary, secondary), "recombination")

    log.info("Evolution finished", extra={"created": len(created)})
    return created


__all__ = ["evolve", "high_performers", "recombine", "transplant"]
