"""
IMPOUND RAIL

Impound-fee computation, payment reconciliation and verifiable receipts for a
municipal vehicle pound.
"""

__version__ = "1.0.0"
