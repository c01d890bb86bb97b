"""
Search credential pool.

Rotates across free, quota-limited search keys and hands out the paid channel
only once every free slot is exhausted. Slots reset lazily when their
`reset_at` passes, or all at once through `reset_all()`.
"""

from __future__ import annotations

import itertools
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from discovery_engine.config import Settings
from discovery_engine.domain.errors import InvariantViolation
from discovery_engine.domain.models import Credential, CredentialSlot, PaidFallback, utc_now
from discovery_engine.infrastructure.document_store import CREDENTIAL_SLOTS, DocumentStore
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

SlotChange = Callable[[CredentialSlot], bool]


def next_reset(now: datetime, reset_hour_utc: int = 0) -> datetime:
    """First `reset_hour_utc:00` strictly after `now`."""
    candidate = now.replace(hour=reset_hour_utc, minute=0, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


class CredentialPool:
    def __init__(
        self,
        slots: Sequence[CredentialSlot],
        paid: Optional[PaidFallback] = None,
        *,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
        reset_hour_utc: int = 0,
    ) -> None:
        self._slots: List[CredentialSlot] = [slot.model_copy() for slot in slots]
        self._paid = paid or PaidFallback()
        self._store = store
        self._clock = clock
        self._reset_hour = reset_hour_utc
        self._lock = threading.Lock()
        # Monotonic use sequence; lower means less recently used.
        self._sequence = itertools.count(1)
        self._last_use: Dict[str, int] = {slot.id: 0 for slot in self._slots}
        self.paid_acquisitions = 0

        if store is not None:
            self._restore()
        for slot in self._slots:
            self._check_invariant(slot)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> "CredentialPool":
        reset_at = next_reset(clock(), settings.search_reset_hour_utc)
        slots = [
            CredentialSlot(
                id=f"slot-{index}",
                api_key=key,
                daily_quota=settings.search_free_daily_quota,
                reset_at=reset_at,
            )
            for index, key in enumerate(settings.search_api_key_list, start=1)
        ]
        paid = PaidFallback(api_key=settings.serpapi_key, cost_per_query=settings.cost_paid_search_usd)
        return cls(slots, paid, store=store, clock=clock, reset_hour_utc=settings.search_reset_hour_utc)

    # ------------------------------------------------------------------ internals

    def _from_document(self, document: Dict[str, Any], configured: CredentialSlot) -> CredentialSlot:
        """Stored counters on top of the configured key and quota."""
        saved = CredentialSlot.model_validate({**document, "daily_quota": configured.daily_quota})
        return saved.model_copy(update={"api_key": configured.api_key})

    def _restore(self) -> None:
        """Pull usage counters from the store; other processes may share the slots."""
        assert self._store is not None
        for index, slot in enumerate(self._slots):
            document = self._store.get(CREDENTIAL_SLOTS, slot.id)
            if document is not None:
                self._slots[index] = self._from_document(document, slot)

    def _mutate(self, index: int, change: SlotChange) -> bool:
        """
        Apply `change` to one slot and keep the local copy in step.

        With a store the change runs inside a single-document update against
        the stored counters, so pools in other processes cannot double-spend
        the same quota. `change` returns False to leave the slot untouched.
        """
        configured = self._slots[index]
        if self._store is None:
            return change(configured)

        applied = False

        def mutate(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
            nonlocal applied
            current = self._from_document(document, configured) if document is not None else configured.model_copy()
            if not change(current):
                return None
            applied = True
            return current.model_dump(mode="json")

        stored = self._store.update(CREDENTIAL_SLOTS, configured.id, mutate)
        if stored is not None:
            self._slots[index] = self._from_document(stored, configured)
        return applied

    def _check_invariant(self, slot: CredentialSlot) -> None:
        if slot.used_today > slot.daily_quota:
            raise InvariantViolation(
                f"Credential slot {slot.id} used {slot.used_today} times against a quota of {slot.daily_quota}",
                {"slot_id": slot.id, "used_today": slot.used_today, "daily_quota": slot.daily_quota},
            )

    def _reset_change(self, now: datetime, force: bool = False) -> SlotChange:
        def change(slot: CredentialSlot) -> bool:
            if not force and now < slot.reset_at:
                return False
            slot.used_today = 0
            slot.exhausted = False
            slot.exhausted_at = None
            slot.reset_at = next_reset(now, self._reset_hour)
            return True

        return change

    def _claim_change(self, now: datetime) -> SlotChange:
        def change(slot: CredentialSlot) -> bool:
            if slot.exhausted or slot.used_today >= slot.daily_quota:
                return False
            slot.used_today += 1
            slot.last_used_at = now
            self._check_invariant(slot)
            if slot.used_today >= slot.daily_quota:
                slot.exhausted = True
                slot.exhausted_at = now
            return True

        return change

    def _exhaust_change(self, now: datetime) -> SlotChange:
        def change(slot: CredentialSlot) -> bool:
            if slot.exhausted:
                return False
            slot.exhausted = True
            slot.exhausted_at = now
            return True

        return change

    def _index(self, slot_id: str) -> Optional[int]:
        return next((index for index, slot in enumerate(self._slots) if slot.id == slot_id), None)

    # ------------------------------------------------------------------ API

    def acquire(self, purpose: str = "search") -> Credential:
        """
        Hand out the least-recently-used free slot with quota left.

        Counts the use against the slot before returning. Once every slot is
        exhausted the paid fallback is returned instead.
        """
        with self._lock:
            now = self._clock()
            if self._store is not None:
                self._restore()
            for index, slot in enumerate(self._slots):
                if now >= slot.reset_at:
                    self._mutate(index, self._reset_change(now))

            candidates = sorted(
                (index for index, slot in enumerate(self._slots) if not slot.exhausted and slot.remaining > 0),
                key=lambda index: self._last_use[self._slots[index].id],
            )
            claim = self._claim_change(now)
            for index in candidates:
                if not self._mutate(index, claim):
                    # Taken by another process since the refresh.
                    continue
                slot = self._slots[index]
                self._last_use[slot.id] = next(self._sequence)
                if slot.exhausted:
                    log.info(
                        f"[CREDENTIAL EXHAUSTED] {slot.id}",
                        extra={"slot_id": slot.id, "reason": "daily quota reached"},
                    )
                return slot.model_copy()

            self.paid_acquisitions += 1
            log.debug("All free credentials exhausted; using paid channel", extra={"purpose": purpose})
            return self._paid

    def report_exhausted(self, slot_id: str) -> None:
        """The search service rejected this slot; stop handing it out until reset."""
        with self._lock:
            index = self._index(slot_id)
            if index is None:
                return
            if self._mutate(index, self._exhaust_change(self._clock())):
                log.info(
                    f"[CREDENTIAL EXHAUSTED] {slot_id}",
                    extra={"slot_id": slot_id, "reason": "rate limited by provider"},
                )

    def reset_all(self) -> None:
        with self._lock:
            reset = self._reset_change(self._clock(), force=True)
            for index in range(len(self._slots)):
                self._mutate(index, reset)
        log.info("Credential pool reset", extra={"slots": len(self._slots)})

    def free_capacity(self) -> int:
        with self._lock:
            if self._store is not None:
                self._restore()
            now = self._clock()
            return sum(
                slot.daily_quota if now >= slot.reset_at else (0 if slot.exhausted else slot.remaining)
                for slot in self._slots
            )

    def snapshot(self) -> List[CredentialSlot]:
        with self._lock:
            if self._store is not None:
                self._restore()
            return [slot.model_copy() for slot in self._slots]

    def __len__(self) -> int:
        return len(self._slots)


__all__ = ["Credential", "CredentialPool", "next_reset"]
