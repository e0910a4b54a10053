"""
Receipts

Issuance (render, sign, store, record) and public verification of payment
receipts.
"""

from .issuer import ReceiptIssuer, canonical_json, receipt_number_for, verification_code_for
from .renderer import Municipality, ReceiptRenderer
from .storage import ReceiptStorage
from .verifier import ReceiptVerifier, RedactedSummary

__all__ = [
    "ReceiptIssuer",
    "canonical_json",
    "receipt_number_for",
    "verification_code_for",
    "Municipality",
    "ReceiptRenderer",
    "ReceiptStorage",
    "ReceiptVerifier",
    "RedactedSummary",
]
