"""
Error taxonomy for discovery and extraction runs.

Only `InvariantViolation` is fatal to a run. Every other error is absorbed by
the orchestrator at the unit-of-work boundary and recorded in the run log.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict, Optional

if TYPE_CHECKING:
    from discovery_engine.domain.models import AdmissionDecision


class DiscoveryError(Exception):
    """Base class for all engine errors."""


class TransientFetchError(DiscoveryError):
    """A fetch or query failed in a way that may succeed on retry."""


class RateLimitError(DiscoveryError):
    """The search service refused the credential (HTTP 429 or quota exceeded)."""

    def __init__(self, credential_id: str, message: str = "rate limited") -> None:
        super().__init__(f"{message} (credential={credential_id})")
        self.credential_id = credential_id


class PlatformBlockedError(DiscoveryError):
    """The platform denied access; its remaining work is skipped for the run."""

    def __init__(self, platform: str, message: str = "access denied") -> None:
        super().__init__(f"{message} (platform={platform})")
        self.platform = platform


class MalformedAnalysisError(DiscoveryError):
    """The content-analysis service returned something we cannot parse."""


class ContractViolation(DiscoveryError):
    """A content-analysis request would be dispatched with unfilled placeholders."""


class InvalidTransition(DiscoveryError):
    """A run was asked to move between states the state machine does not allow."""


class InvariantViolation(DiscoveryError):
    """Internal bookkeeping is inconsistent; the run must stop."""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.context = context or {}


class AdmissionDenied(DiscoveryError):
    """Raised by callers that prefer an exception over an admission decision."""

    def __init__(self, decision: "AdmissionDecision") -> None:
        super().__init__(decision.reason or "admission denied")
        self.decision = decision


__all__ = [
    "AdmissionDenied",
    "ContractViolation",
    "DiscoveryError",
    "InvalidTransition",
    "InvariantViolation",
    "MalformedAnalysisError",
    "PlatformBlockedError",
    "RateLimitError",
    "TransientFetchError",
]
