"""
Catalogue of delivery platforms the engine searches.

Per-country search domains and venue-page URL patterns. Query construction
uses the domains for `site:` restriction, result filtering and the confidence
scorer use the URL patterns to tell venue pages from listing/landing pages.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Pattern
from urllib.parse import urlparse


@dataclass(frozen=True)
class Platform:
    name: str
    domains: Dict[str, str]
    venue_pattern: Pattern[str]

    @property
    def countries(self) -> List[str]:
        return sorted(self.domains)


PLATFORMS: Dict[str, Platform] = {
    "uber_eats": Platform(
        name="uber_eats",
        domains={
            "DE": "ubereats.com/de",
            "AT": "ubereats.com/at",
            "CH": "ubereats.com/ch",
            "IT": "ubereats.com/it",
            "ES": "ubereats.com/es",
            "FR": "ubereats.com/fr",
            "UK": "ubereats.com/gb",
            "NL": "ubereats.com/nl",
        },
        venue_pattern=re.compile(r"ubereats\.com/[a-z]{2}(?:-[a-z]{2})?/store/[^/?#]+", re.I),
    ),
    "wolt": Platform(
        name="wolt",
        domains={"DE": "wolt.com/de", "AT": "wolt.com/at", "PL": "wolt.com/pl"},
        venue_pattern=re.compile(r"wolt\.com/[a-z]{2}/[a-z]{3}/[^/]+/restaurant/[^/?#]+", re.I),
    ),
    "lieferando": Platform(
        name="lieferando",
        domains={"DE": "lieferando.de", "AT": "lieferando.at"},
        venue_pattern=re.compile(
            r"lieferando\.(?:de|at)/(?:en/)?(?:speisekarte|menu)/[^/?#]+", re.I
        ),
    ),
    "just_eat": Platform(
        name="just_eat",
        domains={
            "CH": "just-eat.ch",
            "IT": "justeat.it",
            "ES": "just-eat.es",
            "FR": "just-eat.fr",
            "UK": "just-eat.co.uk",
        },
        venue_pattern=re.compile(
            r"just-?eat\.(?:ch|it|es|fr|co\.uk)/(?:[a-z]{2}/)?(?:menu|restaurants?-[^/]+|speisekarte)/[^?#]+",
            re.I,
        ),
    ),
    "deliveroo": Platform(
        name="deliveroo",
        domains={
            "IT": "deliveroo.it",
            "ES": "deliveroo.es",
            "FR": "deliveroo.fr",
            "UK": "deliveroo.co.uk",
            "NL": "deliveroo.nl",
            "BE": "deliveroo.be",
        },
        venue_pattern=re.compile(
            r"deliveroo\.(?:it|es|fr|co\.uk|nl|be)/[a-z]{2}/menu/[^/]+/[^?#]+", re.I
        ),
    ),
    "smood": Platform(
        name="smood",
        domains={"CH": "smood.ch"},
        venue_pattern=re.compile(r"smood\.ch/[a-z]{2}/(?:delivery|restaurant)/[^?#]+", re.I),
    ),
    "glovo": Platform(
        name="glovo",
        domains={"IT": "glovoapp.com/it", "ES": "glovoapp.com/es", "PL": "glovoapp.com/pl"},
        venue_pattern=re.compile(r"glovoapp\.com/[a-z]{2}/[a-z]{2}/[^/]+/[^/?#]+", re.I),
    ),
}

# Country markers embedded in platform URLs.
_COUNTRY_MARKERS: Dict[str, List[str]] = {
    "DE": ["lieferando.de", "wolt.com/de", "ubereats.com/de"],
    "AT": ["lieferando.at", "wolt.com/at", "ubereats.com/at"],
    "CH": ["just-eat.ch", "smood.ch", "ubereats.com/ch"],
    "IT": ["justeat.it", "deliveroo.it", "ubereats.com/it", "glovoapp.com/it"],
    "ES": ["just-eat.es", "deliveroo.es", "ubereats.com/es", "glovoapp.com/es"],
    "FR": ["just-eat.fr", "deliveroo.fr", "ubereats.com/fr"],
    "UK": ["just-eat.co.uk", "deliveroo.co.uk", "ubereats.com/gb"],
    "NL": ["thuisbezorgd.nl", "deliveroo.nl", "ubereats.com/nl"],
    "BE": ["takeaway.com/be", "deliveroo.be", "ubereats.com/be"],
    "PL": ["pyszne.pl", "wolt.com/pl", "ubereats.com/pl", "glovoapp.com/pl"],
}


def get_platform(name: str) -> Platform:
    try:
        return PLATFORMS[name]
    except KeyError:
        raise ValueError(f"Unknown platform '{name}'. Available: {', '.join(sorted(PLATFORMS))}") from None


def available_platforms() -> List[str]:
    return sorted(PLATFORMS)


def site_domain(platform: str, country: str) -> Optional[str]:
    return get_platform(platform).domains.get(country.upper())


def is_venue_url(platform: str, url: str) -> bool:
    return bool(get_platform(platform).venue_pattern.search(url))


def platform_from_url(url: str) -> Optional[str]:
    lowered = url.lower()
    for platform in PLATFORMS.values():
        if platform.venue_pattern.search(lowered):
            return platform.name
        host = urlparse(lowered).netloc
        for domain in platform.domains.values():
            if host and domain.split("/")[0] in host:
                return platform.name
    return None


def country_from_url(url: str) -> Optional[str]:
    lowered = url.lower()
    for country, markers in _COUNTRY_MARKERS.items():
        if any(marker in lowered for marker in markers):
            return country
    return None


__all__ = [
    "PLATFORMS",
    "Platform",
    "available_platforms",
    "country_from_url",
    "get_platform",
    "is_venue_url",
    "platform_from_url",
    "site_domain",
]
