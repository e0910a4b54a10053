"""
Billing Module for Impound Rail

The payment ledger and the reconciliation engine that turns cumulative payment
into vehicle status.
"""

from .ledger import LedgerEntry, PaymentLedger, validate_amount
from .notifier import CallbackNotifier, LogNotifier, Notifier
from .reconciliation import ReconciliationEngine, ReconciliationResult

__all__ = [
    "LedgerEntry",
    "PaymentLedger",
    "validate_amount",
    "CallbackNotifier",
    "LogNotifier",
    "Notifier",
    "ReconciliationEngine",
    "ReconciliationResult",
]
