"""
Persistence Layer for Impound Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, UniqueViolation, get_database
from .models import (
    PaymentMethod,
    PaymentOrigin,
    PaymentRecord,
    PaymentStatus,
    ReceiptRecord,
    VehicleRecord,
)
from .repository import PaymentRepository, ReceiptRepository, VehicleRepository

__all__ = [
    "Database",
    "Transaction",
    "UniqueViolation",
    "get_database",
    "PaymentMethod",
    "PaymentOrigin",
    "PaymentRecord",
    "PaymentStatus",
    "ReceiptRecord",
    "VehicleRecord",
    "PaymentRepository",
    "ReceiptRepository",
    "VehicleRepository",
]
