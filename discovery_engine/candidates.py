"""
Candidate persistence as seen from the engine.

The engine may only write candidates whose stored status it owns
(`discovered`, `stale`). Once the review side has verified, rejected or
promoted a candidate, re-discovering it leaves the record alone.
"""

from __future__ import annotations

import hashlib
import threading
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from discovery_engine.domain.models import (
    ENGINE_OWNED_STATUSES,
    Candidate,
    CandidateKind,
    CandidateStatus,
    utc_now,
)
from discovery_engine.infrastructure.document_store import CANDIDATES, DocumentStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)


def candidate_id(kind: CandidateKind, url: str, name: Optional[str] = None) -> str:
    """Stable id so the same venue or dish found twice maps to one record."""
    basis = f"{kind.value}|{url.strip().lower().rstrip('/')}"
    if kind is CandidateKind.DISH:
        basis += f"|{(name or '').strip().casefold()}"
    return f"{kind.value}-{hashlib.sha1(basis.encode('utf-8')).hexdigest()[:16]}"


class CandidateRepository:
    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now) -> None:
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()

    def save(self, candidate: Candidate) -> bool:
        """
        Write or refresh a candidate. Returns False when the stored record is
        owned by review and was left untouched.
        """
        written = False

        def mutate(current: Optional[dict]) -> Optional[dict]:
            nonlocal written
            if current is not None:
                existing = Candidate.model_validate(current)
                if existing.status not in ENGINE_OWNED_STATUSES:
                    return None
                refreshed = candidate.model_copy(
                    update={
                        "discovered_at": existing.discovered_at,
                        "status": CandidateStatus.DISCOVERED,
                        "last_seen_at": self._clock(),
                    }
                )
            else:
                refreshed = candidate.model_copy(update={"status": CandidateStatus.DISCOVERED})
            written = True
            return refreshed.model_dump(mode="json")

        with self._lock:
            self._store.update(CANDIDATES, candidate.id, mutate)
        if not written:
            log.debug("Candidate owned by review; not overwritten", extra={"candidate_id": candidate.id})
        return written

    def get(self, candidate_id: str) -> Optional[Candidate]:
        document = self._store.get(CANDIDATES, candidate_id)
        return Candidate.model_validate(document) if document is not None else None

    def list(self, status: Optional[CandidateStatus] = None) -> List[Candidate]:
        documents = self._store.list(CANDIDATES, status.value if status is not None else None)
        return [Candidate.model_validate(document) for document in documents]

    def mark_stale(self, older_than: timedelta) -> List[Candidate]:
        """Move `discovered` candidates not re-seen within `older_than` to `stale`."""
        cutoff = self._clock() - older_than
        marked: List[Candidate] = []
        for candidate in self.list(CandidateStatus.DISCOVERED):
            if candidate.last_seen_at >= cutoff:
                continue

            def mutate(current: Optional[dict]) -> Optional[dict]:
                if current is None or current.get("status") != CandidateStatus.DISCOVERED.value:
                    return None
                current["status"] = CandidateStatus.STALE.value
                return current

            with self._lock:
                updated = self._store.update(CANDIDATES, candidate.id, mutate)
            if updated is not None and updated.get("status") == CandidateStatus.STALE.value:
                marked.append(Candidate.model_validate(updated))
        if marked:
            log.info("Candidates marked stale", extra={"count": len(marked)})
        return marked


__all__ = ["CandidateRepository", "candidate_id"]
