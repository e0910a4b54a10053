"""
Receipt Verifier

Public answer to "is this receipt genuine?". Given a receipt number (what the
QR code carries) or a payment id, returns a redacted summary or NotFound.

A receipt row only counts if its stored signature verifies over its stored
payload with a non-revoked municipality key, and the signed facts still match
the payment and vehicle rows. Anything else answers exactly like an unknown
receipt, so the endpoint reveals nothing about forged or tampered rows.
"""

import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog

from ..core.errors import NotFoundError
from ..crypto.keys import KeyManager
from ..persistence.database import Database
from ..persistence.models import ReceiptRecord
from ..persistence.repository import PaymentRepository, ReceiptRepository, VehicleRepository
from .issuer import receipt_number_for

logger = structlog.get_logger()


@dataclass(frozen=True)
class RedactedSummary:
    """The only fields a public verification ever discloses."""
    license_plate: str
    owner_name: str
    amount: int
    date: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "license_plate": self.license_plate,
            "owner_name": self.owner_name,
            "amount": self.amount,
            "date": self.date,
        }


class ReceiptVerifier:
    """Checks receipts against their signatures and the live ledger."""

    def __init__(self, db: Database, keys: KeyManager):
        self.keys = keys
        self.receipts = ReceiptRepository(db)
        self.payments = PaymentRepository(db)
        self.vehicles = VehicleRepository(db)

    def verify(self, reference: str) -> RedactedSummary:
        reference = (reference or "").strip()
        if not reference:
            raise NotFoundError("Receipt", reference)

        receipt = self.receipts.get_by_number(reference) or self.receipts.get(reference)
        if receipt is None:
            logger.info("receipt_verification_unknown", reference=reference)
            raise NotFoundError("Receipt", reference)

        summary = self._check(receipt)
        if summary is None:
            raise NotFoundError("Receipt", reference)

        logger.info("receipt_verified", receipt_number=receipt.receipt_number, key_id=receipt.key_id)
        return summary

    def _check(self, receipt: ReceiptRecord) -> Optional[RedactedSummary]:
        result = self.keys.verify(
            receipt.key_id,
            receipt.payload.encode("utf-8"),
            _b64decode(receipt.signature),
        )
        if not result.valid:
            self._reject(receipt, result.error or "signature mismatch")
            return None

        try:
            payload = json.loads(receipt.payload)
            signed_payment = payload["payment"]
            signed_vehicle = payload["vehicle"]
        except (ValueError, KeyError, TypeError):
            self._reject(receipt, "malformed payload")
            return None

        payment = self.payments.get(receipt.payment_id)
        vehicle = self.vehicles.get(payment.vehicle_id) if payment else None
        if payment is None or vehicle is None or not payment.is_completed:
            self._reject(receipt, "payment or vehicle missing")
            return None

        expected = (
            payload.get("receipt_number") == receipt.receipt_number,
            receipt_number_for(payment.payment_id) == receipt.receipt_number,
            signed_payment.get("amount") == payment.amount,
            signed_vehicle.get("category") == vehicle.category,
            signed_vehicle.get("license_plate") == vehicle.license_plate,
        )
        if not all(expected):
            self._reject(receipt, "signed facts differ from ledger")
            return None

        return RedactedSummary(
            license_plate=signed_vehicle["license_plate"],
            owner_name=signed_vehicle.get("owner_name") or "",
            amount=signed_payment["amount"],
            date=signed_payment.get("paid_at", payment.created_at),
        )

    def _reject(self, receipt: ReceiptRecord, reason: str) -> None:
        logger.warning(
            "receipt_signature_invalid",
            receipt_number=receipt.receipt_number,
            payment_id=receipt.payment_id,
            key_id=receipt.key_id,
            reason=reason,
        )


def _b64decode(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return b""
