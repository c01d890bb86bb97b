"""
Domain models for the venue discovery engine.

Pydantic models for the records the engine owns (strategies, credential slots,
query-cache entries, budget ledgers, runs, candidates) plus the small value
objects that flow between components. Persistence is document-shaped: every
model round-trips through `model_dump(mode="json")`.
"""
from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field, computed_field, model_validator


def utc_now() -> datetime:
    return datetime.now(UTC)


class StrategyOrigin(str, Enum):
    SEED = "seed"
    AGENT = "agent"
    MANUAL = "manual"
    EVOLVED = "evolved"


class StrategyOutcome(str, Enum):
    SUCCESS = "success"
    FALSE_POSITIVE = "false_positive"
    NO_RESULT = "no_result"


class Strategy(BaseModel):
    """
    A reusable search-query template scoped to a platform and country.

    `success_rate` is derived from the counters and a neutral prior; it has no
    setter and is never stored independently of them.
    """

    id: str
    platform: str
    country: str
    query_template: str = Field(..., description="Template with a `{city}` placeholder.")
    total_uses: int = Field(0, ge=0)
    successful_discoveries: int = Field(0, ge=0)
    false_positives: int = Field(0, ge=0)
    origin: StrategyOrigin = StrategyOrigin.SEED
    parent_strategy_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    prior_success_rate: float = Field(50.0, ge=0, le=100)
    prior_weight: float = Field(2.0, ge=0)
    deprecated_at: Optional[datetime] = None
    deprecation_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    last_used_at: Optional[datetime] = None

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_counters(self) -> "Strategy":
        if self.successful_discoveries + self.false_positives > self.total_uses:
            raise ValueError(
                "successful_discoveries + false_positives cannot exceed total_uses "
                f"({self.successful_discoveries} + {self.false_positives} > {self.total_uses})"
            )
        if "{city}" not in self.query_template:
            raise ValueError("query_template must contain a {city} placeholder")
        return self

    @computed_field  # type: ignore[prop-decorator]
    @property
    def success_rate(self) -> float:
        """Smoothed discovery rate in [0, 100]; untested strategies sit at their prior."""
        denominator = self.total_uses + self.prior_weight
        if denominator <= 0:
            return round(self.prior_success_rate, 2)
        pseudo_successes = self.prior_weight * self.prior_success_rate / 100.0
        rate = (self.successful_discoveries + pseudo_successes) / denominator * 100.0
        return round(min(max(rate, 0.0), 100.0), 2)

    @property
    def is_deprecated(self) -> bool:
        return self.deprecated_at is not None

    def tier(self, min_uses: int) -> str:
        if self.total_uses < min_uses:
            return "untested"
        if self.success_rate >= 70:
            return "high"
        if self.success_rate >= 40:
            return "medium"
        return "low"


class CredentialSlot(BaseModel):
    """One rotation unit of free, rate-limited search access."""

    id: str
    api_key: str = Field("", repr=False, exclude=True)
    daily_quota: int = Field(..., gt=0)
    used_today: int = Field(0, ge=0)
    exhausted: bool = False
    exhausted_at: Optional[datetime] = None
    reset_at: datetime
    last_used_at: Optional[datetime] = None

    @property
    def is_paid(self) -> bool:
        return False

    @property
    def remaining(self) -> int:
        return max(self.daily_quota - self.used_today, 0)


class PaidFallback(BaseModel):
    """Handle for the paid search channel used once every free slot is exhausted."""

    id: str = "paid-fallback"
    api_key: str = Field("", repr=False, exclude=True)
    cost_per_query: float = Field(0.0, ge=0)

    @property
    def is_paid(self) -> bool:
        return True


Credential = Union[CredentialSlot, PaidFallback]


class CacheEntry(BaseModel):
    key: str
    last_executed_at: datetime
    had_results: bool


class ThrottleEvent(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    reason: str


class BudgetLedger(BaseModel):
    """Spend record for one accounting period (a day `YYYY-MM-DD` or a month `YYYY-MM`)."""

    id: str
    period: str = Field(..., pattern="^(day|month)$")
    free_searches: int = 0
    paid_searches: int = 0
    ai_calls: Dict[str, int] = Field(default_factory=dict)
    search_cost: float = 0.0
    ai_cost: float = 0.0
    # Committed run cost that no search or AI usage event accounted for.
    unattributed_cost: float = 0.0
    throttle_events: List[ThrottleEvent] = Field(default_factory=list)
    applied_event_ids: List[str] = Field(default_factory=list)
    run_costs: Dict[str, float] = Field(default_factory=dict)
    committed_runs: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_cost(self) -> float:
        return round(self.search_cost + self.ai_cost + self.unattributed_cost, 6)


class CostEstimate(BaseModel):
    free_search_queries: int = 0
    paid_search_queries: int = 0
    ai_calls: int = 0
    total: float = 0.0

    model_config = {"frozen": True}


class AdmissionDecision(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    period: Optional[str] = None
    current_spend: float = 0.0
    limit: float = 0.0
    remaining: float = 0.0
    estimated_cost: float = 0.0

    model_config = {"frozen": True}


class SearchResult(BaseModel):
    url: str
    title: str = ""
    snippet: str = ""


class RunKind(str, Enum):
    DISCOVERY = "discovery"
    EXTRACTION = "extraction"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.PARTIAL, RunStatus.CANCELLED}
)


class RunProgress(BaseModel):
    current: int = 0
    total: int = 0
    percentage: float = 0.0
    eta_seconds: Optional[float] = None


class RunCosts(BaseModel):
    search_queries: int = 0
    ai_calls: int = 0
    estimated_spend: float = 0.0


class LogEntry(BaseModel):
    timestamp: datetime = Field(default_factory=utc_now)
    level: str = "info"
    message: str


class Run(BaseModel):
    """One discovery or extraction execution; mutated only through `RunTracker`."""

    id: str
    kind: RunKind
    status: RunStatus = RunStatus.PENDING
    config: Dict[str, object] = Field(default_factory=dict)
    progress: RunProgress = Field(default_factory=RunProgress)
    costs: RunCosts = Field(default_factory=RunCosts)
    logs: List[LogEntry] = Field(default_factory=list)
    stats: Dict[str, int] = Field(default_factory=dict)
    error: Optional[str] = None
    cancel_requested: bool = False
    cancelled_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class CandidateKind(str, Enum):
    VENUE = "venue"
    DISH = "dish"


class CandidateStatus(str, Enum):
    DISCOVERED = "discovered"
    VERIFIED = "verified"
    REJECTED = "rejected"
    PROMOTED = "promoted"
    STALE = "stale"


# Statuses the engine itself may write; the rest belong to human review.
ENGINE_OWNED_STATUSES = frozenset({CandidateStatus.DISCOVERED, CandidateStatus.STALE})


class ConfidenceFactor(BaseModel):
    name: str
    score: float
    max_score: float
    reason: str

    model_config = {"frozen": True}


class ConfidenceResult(BaseModel):
    score: float = Field(..., ge=0, le=100)
    factors: List[ConfidenceFactor]

    model_config = {"frozen": True}

    def total_without(self, factor_name: str) -> float:
        """Score the candidate would have had without one factor."""
        remaining = sum(f.score for f in self.factors if f.name != factor_name)
        return round(min(max(remaining, 0.0), 100.0), 2)


class Candidate(BaseModel):
    """A discovered venue or dish awaiting human review."""

    id: str
    kind: CandidateKind
    url: str
    platform: str
    country: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[str] = None
    venue_id: Optional[str] = None
    strategy_id: Optional[str] = None
    run_id: Optional[str] = None
    confidence_score: float = Field(..., ge=0, le=100)
    confidence_factors: List[ConfidenceFactor] = Field(default_factory=list)
    status: CandidateStatus = CandidateStatus.DISCOVERED
    discovered_at: datetime = Field(default_factory=utc_now)
    last_seen_at: datetime = Field(default_factory=utc_now)


__all__ = [
    "AdmissionDecision",
    "BudgetLedger",
    "CacheEntry",
    "Candidate",
    "CandidateKind",
    "CandidateStatus",
    "ConfidenceFactor",
    "ConfidenceResult",
    "CostEstimate",
    "Credential",
    "CredentialSlot",
    "ENGINE_OWNED_STATUSES",
    "LogEntry",
    "PaidFallback",
    "Run",
    "RunCosts",
    "RunKind",
    "RunProgress",
    "RunStatus",
    "SearchResult",
    "Strategy",
    "StrategyOrigin",
    "StrategyOutcome",
    "TERMINAL_STATUSES",
    "ThrottleEvent",
    "utc_now",
]
