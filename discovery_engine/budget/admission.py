"""
Budget admission control.

Every run asks for permission before it starts (`admit`) and before each
cost-incurring item (`admit_continuation`). Denials are recorded on the ledger
as throttle events so the budget history shows when and why work was refused.
"""

from __future__ import annotations

from typing import Callable, List, Optional

from pydantic import BaseModel

from discovery_engine.budget.ledger import BudgetLedgerService
from discovery_engine.config import Settings
from discovery_engine.domain.errors import AdmissionDenied
from discovery_engine.domain.models import AdmissionDecision, CostEstimate
from discovery_engine.utils.logging import get_logger

log = get_logger(__name__)


class BudgetStatus(BaseModel):
    daily_spend: float
    daily_limit: float
    daily_remaining: float
    monthly_spend: float
    monthly_limit: float
    monthly_remaining: float
    percentage_used: float
    throttled: bool
    free_searches_today: int
    paid_searches_today: int
    ai_calls_today: int


class AdmissionController:
    """
    Gatekeeper between estimated cost and the remaining budget.

    An estimate is refused when it does not fit in what is left of the day or
    the month, or when the estimate alone would consume more than
    `throttle_fraction` of a period's limit. The daily and monthly checks both
    apply; the stricter one decides.
    """

    def __init__(
        self,
        ledger: BudgetLedgerService,
        *,
        daily_limit: float,
        monthly_limit: float,
        throttle_fraction: float = 0.8,
        free_search_cost: float = 0.0,
        paid_search_cost: float = 0.005,
        ai_call_cost: float = 0.003,
        free_capacity: Optional[Callable[[], int]] = None,
    ) -> None:
        self.ledger = ledger
        self.daily_limit = daily_limit
        self.monthly_limit = monthly_limit
        self.throttle_fraction = throttle_fraction
        self.free_search_cost = free_search_cost
        self.paid_search_cost = paid_search_cost
        self.ai_call_cost = ai_call_cost
        self._free_capacity = free_capacity

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        ledger: BudgetLedgerService,
        free_capacity: Optional[Callable[[], int]] = None,
    ) -> "AdmissionController":
        return cls(
            ledger,
            daily_limit=settings.budget_daily_limit_usd,
            monthly_limit=settings.budget_monthly_limit_usd,
            throttle_fraction=settings.budget_throttle_fraction,
            free_search_cost=settings.cost_free_search_usd,
            paid_search_cost=settings.cost_paid_search_usd,
            ai_call_cost=settings.ai_call_cost(),
            free_capacity=free_capacity,
        )

    def estimate(self, search_queries: int = 0, ai_calls: int = 0) -> CostEstimate:
        """
        Price a planned unit of work.

        Queries are charged at the free rate while credential capacity lasts
        and at the paid rate beyond it.
        """
        capacity = self._free_capacity() if self._free_capacity is not None else 0
        free = min(search_queries, max(capacity, 0))
        paid = search_queries - free
        total = free * self.free_search_cost + paid * self.paid_search_cost + ai_calls * self.ai_call_cost
        return CostEstimate(
            free_search_queries=free,
            paid_search_queries=paid,
            ai_calls=ai_calls,
            total=round(total, 6),
        )

    def _check(self, period: str, spend: float, limit: float, cost: float, *, continuation: bool) -> AdmissionDecision:
        remaining = round(max(limit - spend, 0.0), 6)
        reason = None
        if remaining <= 0:
            reason = f"{period.capitalize()} budget exhausted (${spend:.2f} of ${limit:.2f} spent)"
        elif cost > remaining:
            reason = (
                f"Estimated cost (${cost:.2f}) exceeds remaining {period} budget "
                f"(${remaining:.2f} of ${limit:.2f})"
            )
        elif not continuation and cost > limit * self.throttle_fraction:
            reason = (
                f"Estimated cost (${cost:.2f}) would consume more than "
                f"{self.throttle_fraction:.0%} of the {period} limit (${limit:.2f})"
            )
        return AdmissionDecision(
            allowed=reason is None,
            reason=reason,
            period=period,
            current_spend=round(spend, 6),
            limit=limit,
            remaining=remaining,
            estimated_cost=cost,
        )

    def _decide(self, cost: float, *, continuation: bool) -> AdmissionDecision:
        decisions: List[AdmissionDecision] = [
            self._check("daily", self.ledger.spend("day"), self.daily_limit, cost, continuation=continuation),
            self._check("monthly", self.ledger.spend("month"), self.monthly_limit, cost, continuation=continuation),
        ]
        denied = [decision for decision in decisions if not decision.allowed]
        if denied:
            decision = min(denied, key=lambda d: d.remaining)
            self.ledger.add_throttle_event(decision.reason or "budget exceeded")
            log.warning(
                f"[BUDGET DENIED] {decision.reason}",
                extra={"period": decision.period, "estimated_cost": cost, "continuation": continuation},
            )
            return decision
        return min(decisions, key=lambda d: d.remaining)

    def admit(self, estimate: CostEstimate | float) -> AdmissionDecision:
        cost = estimate.total if isinstance(estimate, CostEstimate) else float(estimate)
        return self._decide(cost, continuation=False)

    def admit_continuation(self, next_item_cost: float) -> AdmissionDecision:
        """Mid-run check: does the next item still fit in the remaining budget?"""
        return self._decide(next_item_cost, continuation=True)

    def require(self, estimate: CostEstimate | float) -> AdmissionDecision:
        decision = self.admit(estimate)
        if not decision.allowed:
            raise AdmissionDenied(decision)
        return decision

    def commit(self, run_id: str, actual_cost: float) -> bool:
        return self.ledger.commit(run_id, actual_cost)

    def status(self) -> BudgetStatus:
        today = self.ledger.today()
        month = self.ledger.monthly_summary()
        daily_spend = today.total_cost
        return BudgetStatus(
            daily_spend=daily_spend,
            daily_limit=self.daily_limit,
            daily_remaining=round(max(self.daily_limit - daily_spend, 0.0), 6),
            monthly_spend=month.total_cost,
            monthly_limit=self.monthly_limit,
            monthly_remaining=round(max(self.monthly_limit - month.total_cost, 0.0), 6),
            percentage_used=round(daily_spend / self.daily_limit * 100, 2) if self.daily_limit else 100.0,
            throttled=daily_spend >= self.daily_limit * self.throttle_fraction,
            free_searches_today=today.free_searches,
            paid_searches_today=today.paid_searches,
            ai_calls_today=sum(today.ai_calls.values()),
        )


__all__ = ["AdmissionController", "BudgetStatus"]
