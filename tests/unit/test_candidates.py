from __future__ import annotations

from datetime import timedelta

from discovery_engine.candidates import CandidateRepository, candidate_id
from discovery_engine.domain.models import Candidate, CandidateKind, CandidateStatus
from discovery_engine.infrastructure.document_store import CANDIDATES

VENUE_URL = "https://wolt.com/de/deu/berlin/restaurant/green-bowl"


def _venue(clock, score: float = 70.0, **changes) -> Candidate:
    data = dict(
        id=candidate_id(CandidateKind.VENUE, VENUE_URL),
        kind=CandidateKind.VENUE,
        url=VENUE_URL,
        platform="wolt",
        name="Green Bowl",
        confidence_score=score,
        discovered_at=clock(),
        last_seen_at=clock(),
    )
    data.update(changes)
    return Candidate(**data)


def test_candidate_ids_are_stable() -> None:
    assert candidate_id(CandidateKind.VENUE, VENUE_URL) == candidate_id(CandidateKind.VENUE, VENUE_URL.upper() + "/")
    first = candidate_id(CandidateKind.DISH, VENUE_URL, "Planted Bowl")
    assert first == candidate_id(CandidateKind.DISH, VENUE_URL, " planted bowl ")
    assert first != candidate_id(CandidateKind.DISH, VENUE_URL, "Kebab")
    assert first.startswith("dish-")


def test_rediscovery_refreshes_but_keeps_first_seen(clock, memory_store) -> None:
    repo = CandidateRepository(memory_store, clock=clock)
    assert repo.save(_venue(clock, 60.0)) is True
    first_seen = clock()

    clock.advance(days=2)
    assert repo.save(_venue(clock, 75.0)) is True

    stored = repo.get(candidate_id(CandidateKind.VENUE, VENUE_URL))
    assert stored.confidence_score == 75.0
    assert stored.discovered_at == first_seen
    assert stored.last_seen_at == clock()


def test_review_owned_candidates_are_never_overwritten(clock, memory_store) -> None:
    repo = CandidateRepository(memory_store, clock=clock)
    repo.save(_venue(clock))
    memory_store.update(
        CANDIDATES,
        candidate_id(CandidateKind.VENUE, VENUE_URL),
        lambda doc: {**doc, "status": CandidateStatus.REJECTED.value},
    )

    assert repo.save(_venue(clock, 99.0)) is False

    stored = repo.get(candidate_id(CandidateKind.VENUE, VENUE_URL))
    assert stored.status is CandidateStatus.REJECTED
    assert stored.confidence_score == 70.0


def test_engine_status_is_forced_to_discovered(clock, memory_store) -> None:
    repo = CandidateRepository(memory_store, clock=clock)
    repo.save(_venue(clock, status=CandidateStatus.PROMOTED))
    assert [c.status for c in repo.list()] == [CandidateStatus.DISCOVERED]


def test_mark_stale_moves_only_old_discovered_candidates(clock, memory_store) -> None:
    repo = CandidateRepository(memory_store, clock=clock)
    repo.save(_venue(clock))
    clock.advance(days=10)
    fresh_url = "https://wolt.com/de/deu/berlin/restaurant/fresh-place"
    repo.save(_venue(clock, id=candidate_id(CandidateKind.VENUE, fresh_url), url=fresh_url))

    marked = repo.mark_stale(timedelta(days=7))

    assert [c.url for c in marked] == [VENUE_URL]
    assert [c.url for c in repo.list(CandidateStatus.STALE)] == [VENUE_URL]
    assert [c.url for c in repo.list(CandidateStatus.DISCOVERED)] == [fresh_url]
    assert repo.mark_stale(timedelta(days=7)) == []


def test_stale_candidate_is_revived_when_seen_again(clock, memory_store) -> None:
    repo = CandidateRepository(memory_store, clock=clock)
    repo.save(_venue(clock))
    clock.advance(days=10)
    repo.mark_stale(timedelta(days=7))

    assert repo.save(_venue(clock)) is True
    assert repo.get(candidate_id(CandidateKind.VENUE, VENUE_URL)).status is CandidateStatus.DISCOVERED
