"""Spend tracking, admission control and search credential rotation."""

from discovery_engine.budget.admission import AdmissionController, BudgetStatus
from discovery_engine.budget.credentials import Credential, CredentialPool, next_reset
from discovery_engine.budget.ledger import BudgetLedgerService, day_key, month_key

__all__ = [
    "AdmissionController",
    "BudgetLedgerService",
    "BudgetStatus",
    "Credential",
    "CredentialPool",
    "day_key",
    "month_key",
    "next_reset",
]
