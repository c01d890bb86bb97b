"""
Query dedup cache.

Suppresses re-issuing search queries that are semantically identical to one
run recently. Queries are canonicalized (case-folded, whitespace-collapsed,
token order ignored) before lookup, so "Planted Chicken Berlin" and
"  BERLIN   chicken  PLANTED  " share one entry.

Validity windows:
- a query that returned results is skipped for DEDUP_POSITIVE_TTL_HOURS (24h)
- a query that returned nothing is skipped for DEDUP_NEGATIVE_TTL_DAYS (7d)

Expired entries are reclaimed lazily on lookup or by `purge_expired()`.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from discovery_engine.domain.models import CacheEntry, utc_now
from discovery_engine.infrastructure.document_store import QUERY_CACHE, DocumentStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)


def normalize_query(raw_query: str) -> str:
    """Canonical cache key: case-folded tokens, sorted, single-space joined."""
    tokens = raw_query.casefold().split()
    return " ".join(sorted(tokens))


class QueryDedupCache:
    def __init__(
        self,
        positive_ttl: timedelta = timedelta(hours=24),
        negative_ttl: timedelta = timedelta(days=7),
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.positive_ttl = positive_ttl
        self.negative_ttl = negative_ttl
        self._store = store
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        if store is not None:
            for doc in store.list(QUERY_CACHE):
                entry = CacheEntry.model_validate(doc)
                self._entries[entry.key] = entry

    def _ttl(self, entry: CacheEntry) -> timedelta:
        return self.positive_ttl if entry.had_results else self.negative_ttl

    def _is_fresh(self, entry: CacheEntry, now: datetime) -> bool:
        return now - entry.last_executed_at < self._ttl(entry)

    def should_skip(self, raw_query: str) -> bool:
        """
        True when an equivalent query ran inside its validity window.

        Any miss, including an expired entry, means "run it".
        """
        key = normalize_query(raw_query)
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if self._is_fresh(entry, now):
                return True
            del self._entries[key]
        if self._store is not None:
            self._store.delete(QUERY_CACHE, key)
        return False

    def record(self, raw_query: str, had_results: bool) -> CacheEntry:
        entry = CacheEntry(
            key=normalize_query(raw_query),
            last_executed_at=self._clock(),
            had_results=had_results,
        )
        with self._lock:
            self._entries[entry.key] = entry
        if self._store is not None:
            self._store.put(QUERY_CACHE, entry.key, entry.model_dump(mode="json"))
        return entry

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
            for key in expired:
                del self._entries[key]
        if self._store is not None:
            for key in expired:
                self._store.delete(QUERY_CACHE, key)
        if expired:
            log.debug("Purged expired query-cache entries", extra={"purged": len(expired)})
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["QueryDedupCache", "normalize_query"]
