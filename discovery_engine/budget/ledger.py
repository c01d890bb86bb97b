"""
Budget ledger: the single owner of spend-to-date.

One `BudgetLedger` document per day (`YYYY-MM-DD`) plus a rolled-up one per
month (`YYYY-MM`). The documents live only in the store: every write is a
single-document `update` (a row lock on Postgres), so several runs or several
processes charging at once never lose an increment, and every read sees what
the other writers committed. Cost-incurring events carry an id so a retried
write is applied exactly once.
"""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from discovery_engine.domain.errors import InvariantViolation
from discovery_engine.domain.models import BudgetLedger, ThrottleEvent, utc_now
from discovery_engine.infrastructure.document_store import (
    BUDGET_LEDGERS,
    Document,
    DocumentStore,
    InMemoryDocumentStore,
)
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)

# Bound on remembered event ids per ledger document.
_MAX_EVENT_IDS = 50_000

LedgerChange = Callable[[BudgetLedger], bool]


def day_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def month_key(moment: datetime) -> str:
    return moment.strftime("%Y-%m")


class BudgetLedgerService:
    def __init__(
        self,
        store: Optional[DocumentStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store if store is not None else InMemoryDocumentStore()
        self._clock = clock

    # ------------------------------------------------------------------ internals

    def _keys(self) -> List[Tuple[str, str]]:
        now = self._clock()
        return [(month_key(now), "month"), (day_key(now), "day")]

    def _read(self, key: str, period: str) -> BudgetLedger:
        document = self._store.get(BUDGET_LEDGERS, key)
        if document is None:
            return BudgetLedger(id=key, period=period)
        return BudgetLedger.model_validate(document)

    def _apply(self, key: str, period: str, change: LedgerChange) -> bool:
        """
        Run `change` against the stored ledger inside one store update.

        `change` mutates the ledger and returns True, or returns False to
        leave the document untouched.
        """
        applied = False
        now = self._clock()

        def mutate(document: Optional[Document]) -> Optional[Document]:
            nonlocal applied
            ledger = (
                BudgetLedger.model_validate(document)
                if document is not None
                else BudgetLedger(id=key, period=period, created_at=now)
            )
            if not change(ledger):
                return None
            applied = True
            ledger.updated_at = now
            if len(ledger.applied_event_ids) > _MAX_EVENT_IDS:
                del ledger.applied_event_ids[: len(ledger.applied_event_ids) - _MAX_EVENT_IDS]
            return ledger.model_dump(mode="json")

        self._store.update(BUDGET_LEDGERS, key, mutate)
        return applied

    # ------------------------------------------------------------------ writes

    def record_usage(
        self,
        event_id: str,
        *,
        run_id: Optional[str] = None,
        free_searches: int = 0,
        paid_searches: int = 0,
        ai_calls: Optional[Dict[str, int]] = None,
        search_cost: float = 0.0,
        ai_cost: float = 0.0,
    ) -> bool:
        """
        Apply one cost-incurring event to the month and day ledgers.

        Returns False when the event id was already applied (retry of a write
        that succeeded), leaving the ledgers untouched.
        """
        ai_calls = ai_calls or {}
        if min(free_searches, paid_searches, *ai_calls.values(), 0) < 0 or search_cost < 0 or ai_cost < 0:
            raise InvariantViolation(
                "Negative usage recorded against the budget ledger",
                {"event_id": event_id, "search_cost": search_cost, "ai_cost": ai_cost},
            )
        cost = search_cost + ai_cost

        def change(ledger: BudgetLedger) -> bool:
            if event_id in ledger.applied_event_ids:
                return False
            ledger.free_searches += free_searches
            ledger.paid_searches += paid_searches
            for provider, count in ai_calls.items():
                ledger.ai_calls[provider] = ledger.ai_calls.get(provider, 0) + count
            ledger.search_cost = round(ledger.search_cost + search_cost, 6)
            ledger.ai_cost = round(ledger.ai_cost + ai_cost, 6)
            ledger.applied_event_ids.append(event_id)
            if run_id is not None and cost:
                ledger.run_costs[run_id] = round(ledger.run_costs.get(run_id, 0.0) + cost, 6)
            return True

        applied = [self._apply(key, period, change) for key, period in self._keys()]
        if not applied[0]:
            log.debug("Duplicate usage event ignored", extra={"event_id": event_id})
        return applied[0]

    def commit(self, run_id: str, actual_cost: float) -> bool:
        """
        Finalize a run's spend. Idempotent per run id.

        Only the part of `actual_cost` not already charged by the run's usage
        events is added, booked as unattributed cost. A repeated commit
        returns False and changes nothing.
        """
        if actual_cost < 0:
            raise InvariantViolation("Negative run cost committed", {"run_id": run_id})

        (month_id, _), (day_id, _) = self._keys()
        adjustment = 0.0

        def change(ledger: BudgetLedger) -> bool:
            nonlocal adjustment
            if run_id in ledger.committed_runs:
                return False
            if ledger.period == "month":
                # The month document sees every usage event of a run started this month.
                already_charged = ledger.run_costs.get(run_id, 0.0)
                adjustment = round(max(actual_cost - already_charged, 0.0), 6)
            ledger.unattributed_cost = round(ledger.unattributed_cost + adjustment, 6)
            ledger.committed_runs.append(run_id)
            ledger.applied_event_ids.append(f"commit:{run_id}")
            if adjustment:
                ledger.run_costs[run_id] = round(ledger.run_costs.get(run_id, 0.0) + adjustment, 6)
            return True

        if not self._apply(month_id, "month", change):
            log.warning("Duplicate cost commit ignored", extra={"run_id": run_id})
            return False
        self._apply(day_id, "day", change)

        log.info(
            "[BUDGET COMMIT] run cost committed",
            extra={"run_id": run_id, "actual_cost": actual_cost, "adjustment": adjustment},
        )
        return True

    def add_throttle_event(self, reason: str) -> ThrottleEvent:
        event = ThrottleEvent(timestamp=self._clock(), reason=reason)

        def change(ledger: BudgetLedger) -> bool:
            ledger.throttle_events.append(event)
            return True

        for key, period in self._keys():
            self._apply(key, period, change)
        return event

    # ------------------------------------------------------------------ reads

    def spend(self, period: str = "day") -> float:
        now = self._clock()
        if period == "day":
            return self._read(day_key(now), "day").total_cost
        return self._read(month_key(now), "month").total_cost

    def today(self) -> BudgetLedger:
        return self._read(day_key(self._clock()), "day")

    def monthly_summary(self) -> BudgetLedger:
        return self._read(month_key(self._clock()), "month")

    def history(self, days: int = 30) -> List[BudgetLedger]:
        """Daily ledgers for the last `days` days, newest first."""
        ledgers = [
            BudgetLedger.model_validate(document)
            for document in self._store.list(BUDGET_LEDGERS)
            if document.get("period") == "day"
        ]
        ledgers.sort(key=lambda ledger: ledger.id, reverse=True)
        return ledgers[:days]


__all__ = ["BudgetLedgerService", "day_key", "month_key"]
