"""
Domain package for the venue discovery engine.

Exports the core domain models and the error taxonomy used across the
budget, strategy, session and orchestration layers. Keep this package
focused on data definitions and validation concerns.
"""

from discovery_engine.domain.errors import (
    AdmissionDenied,
    ContractViolation,
    DiscoveryError,
    InvalidTransition,
    InvariantViolation,
    MalformedAnalysisError,
    PlatformBlockedError,
    RateLimitError,
    TransientFetchError,
)
from discovery_engine.domain.models import (
    AdmissionDecision,
    BudgetLedger,
    CacheEntry,
    Candidate,
    CandidateKind,
    CandidateStatus,
    ConfidenceFactor,
    ConfidenceResult,
    CostEstimate,
    CredentialSlot,
    PaidFallback,
    Run,
    RunKind,
    RunStatus,
    SearchResult,
    Strategy,
    StrategyOrigin,
    StrategyOutcome,
)

__all__ = [
    # Errors
    "AdmissionDenied",
    "ContractViolation",
    "DiscoveryError",
    "InvalidTransition",
    "InvariantViolation",
    "MalformedAnalysisError",
    "PlatformBlockedError",
    "RateLimitError",
    "TransientFetchError",
    # Models
    "AdmissionDecision",
    "BudgetLedger",
    "CacheEntry",
    "Candidate",
    "CandidateKind",
    "CandidateStatus",
    "ConfidenceFactor",
    "ConfidenceResult",
    "CostEstimate",
    "CredentialSlot",
    "PaidFallback",
    "Run",
    "RunKind",
    "RunStatus",
    "SearchResult",
    "Strategy",
    "StrategyOrigin",
    "StrategyOutcome",
]
