"""
Venue Discovery Engine - finds restaurant venues and dishes on delivery platforms.

This package orchestrates discovery runs (search queries built from learned
strategies) and extraction runs (rendering venue pages and analysing their
content) under a shared spending budget, including:

- Query deduplication with result-dependent freshness windows
- Free search credential rotation with a paid fallback
- Budget admission control before and during runs
- A strategy library that learns from outcomes and evolves new templates
- Explainable confidence scoring for every candidate
- Isolated, reusable browser sessions for page extraction
- A cancellable run state machine with progress streaming
"""

from __future__ import annotations

__version__ = "0.1.0"

# Public API exports
from discovery_engine.budget import AdmissionController, BudgetLedgerService, CredentialPool
from discovery_engine.config import Settings, get_settings
from discovery_engine.orchestrator import (
    DiscoveryRequest,
    ExtractionRequest,
    RunOrchestrator,
    RunOutcome,
    build_orchestrator,
)
from discovery_engine.query_cache import QueryDedupCache
from discovery_engine.run_state import RunTracker
from discovery_engine.scoring import ConfidenceScorer
from discovery_engine.sessions import ExtractionSessionManager
from discovery_engine.strategies import StrategyStore
from discovery_engine.streaming import RunEvent, RunEventBus
from discovery_engine.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    # Configuration
    "Settings",
    "get_settings",
    # Orchestration
    "DiscoveryRequest",
    "ExtractionRequest",
    "RunOrchestrator",
    "RunOutcome",
    "build_orchestrator",
    # Components
    "AdmissionController",
    "BudgetLedgerService",
    "ConfidenceScorer",
    "CredentialPool",
    "ExtractionSessionManager",
    "QueryDedupCache",
    "StrategyStore",
    # Run state and streaming
    "RunEvent",
    "RunEventBus",
    "RunTracker",
    # Logging
    "configure_logging",
    "get_logger",
]
