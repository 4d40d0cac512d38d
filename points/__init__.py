"""
Payer Points Ledger

This package provides:
- Timestamped point grants per payer
- Oldest-first spend allocation that never drives a payer negative
- All-or-nothing spends applied in a single store transaction
- Per-payer balance aggregation
"""

from .allocation import aggregate_balances, allocate_spend
from .errors import (
    InsufficientBalanceError,
    LedgerServiceError,
    StorageError,
    ValidationError,
)
from .models import Grant, GrantDeduction, PayerPoints, SpendPlan
from .service import LedgerService
from .storage import InMemoryLedgerStore, LedgerStore, SqlLedgerStore

__all__ = [
    "aggregate_balances",
    "allocate_spend",
    "Grant",
    "GrantDeduction",
    "PayerPoints",
    "SpendPlan",
    "LedgerService",
    "LedgerStore",
    "SqlLedgerStore",
    "InMemoryLedgerStore",
    "LedgerServiceError",
    "ValidationError",
    "InsufficientBalanceError",
    "StorageError",
]
