"""
Receipt Issuer

Produces the one receipt a completed payment is entitled to.

Everything that ends up in the artifact is a function of the payment row, the
vehicle row, the tariff snapshot and the signing key:

- the receipt number is derived from the payment id
- the fee block is evaluated at the payment's own timestamp
- Ed25519 signatures are deterministic, and the verification code is derived
  from the signature

so two issuers racing on the same payment render identical bytes. The artifact
is written (atomically) before the receipt row points at it.
"""

import base64
import hashlib
import json
from typing import Any, Dict, Optional
import structlog

from ..core.errors import NotFoundError, RenderError
from ..core.fees import compute_fee, parse_timestamp
from ..core.tariff import TariffRegistry, VehicleCategory
from ..crypto.keys import KeyManager
from ..persistence.database import Database
from ..persistence.models import PaymentRecord, ReceiptRecord, VehicleRecord
from ..persistence.repository import PaymentRepository, ReceiptRepository, VehicleRepository
from .renderer import Municipality, ReceiptRenderer
from .storage import ReceiptStorage

logger = structlog.get_logger()


def receipt_number_for(payment_id: str) -> str:
    return "RCT-" + hashlib.sha3_256(payment_id.encode("utf-8")).hexdigest()[:12].upper()


def verification_code_for(signature_b64: str) -> str:
    """Short human-checkable code printed under the QR code, e.g. 'A1B2-C3D4-E5F6'."""
    digest = hashlib.sha3_256(base64.b64decode(signature_b64)).hexdigest()[:12].upper()
    return "-".join(digest[i:i + 4] for i in range(0, 12, 4))


def canonical_json(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _display_time(value: str) -> str:
    return parse_timestamp(value).strftime("%d/%m/%Y %H:%M UTC")


def _signed_fee(receipt: Optional[ReceiptRecord]) -> Optional[Dict[str, Any]]:
    if receipt is None:
        return None
    try:
        fee = json.loads(receipt.payload)["fee"]
    except (ValueError, KeyError, TypeError):
        logger.warning("receipt_payload_unreadable", payment_id=receipt.payment_id)
        return None
    return fee if isinstance(fee, dict) else None


class ReceiptIssuer:
    """Renders, signs, stores and records payment receipts."""

    def __init__(
        self,
        db: Database,
        keys: KeyManager,
        storage: ReceiptStorage,
        public_base_url: str,
        municipality: Optional[Municipality] = None,
        tariffs: Optional[TariffRegistry] = None,
        renderer: Optional[ReceiptRenderer] = None,
    ):
        self.db = db
        self.keys = keys
        self.storage = storage
        self.public_base_url = public_base_url.rstrip("/")
        self.municipality = municipality or Municipality()
        self.tariffs = tariffs or TariffRegistry()
        self.renderer = renderer or ReceiptRenderer()
        self.payments = PaymentRepository(db)
        self.vehicles = VehicleRepository(db)
        self.receipts = ReceiptRepository(db)

    def verification_url(self, receipt_number: str) -> str:
        return f"{self.public_base_url}/public/receipts/verify?receipt={receipt_number}"

    def artifact_url(self, payment_id: str) -> str:
        return f"{self.public_base_url}/public/receipts/{payment_id}/artifact"

    def issue(self, payment_id: str, regenerate: bool = False) -> ReceiptRecord:
        """
        Return the receipt for a completed payment, rendering it if needed.

        Rendering happens when no artifact exists yet or `regenerate` is set;
        otherwise the stored receipt is returned untouched.

        Raises:
            NotFoundError: unknown payment
            RenderError: payment not completed, vehicle data incomplete, or the
                artifact could not be written
        """
        existing = self.receipts.get(payment_id)
        if existing is not None and not regenerate and self.storage.exists(payment_id):
            return existing

        payment = self.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        if not payment.is_completed:
            raise RenderError(f"Payment {payment_id} is {payment.status.value}, not completed")

        vehicle = self.vehicles.get(payment.vehicle_id)
        if vehicle is None:
            raise RenderError(f"Vehicle {payment.vehicle_id} for payment {payment_id} is missing")
        missing = [
            name for name in ("license_plate", "category", "owner_name", "impounded_at")
            if not getattr(vehicle, name)
        ]
        if missing:
            raise RenderError(f"Vehicle {vehicle.vehicle_id} is missing {', '.join(missing)}")

        payload = self.build_payload(payment, vehicle, signed_fee=_signed_fee(existing))
        signer = self.keys.get_signer()
        signature = signer.sign_b64(canonical_json(payload))
        code = verification_code_for(signature)

        content = self.renderer.render(payload, signature, signer.key_id, code)
        path = self.storage.write(payment_id, content)

        receipt = ReceiptRecord(
            payment_id=payment_id,
            receipt_number=payload["receipt_number"],
            artifact_path=str(path),
            verification_code=code,
            payload=canonical_json(payload).decode("utf-8"),
            content_hash=hashlib.sha3_256(content).hexdigest(),
            signature=signature,
            key_id=signer.key_id,
        )

        if existing is None and self.receipts.insert_if_absent(receipt):
            logger.info(
                "receipt_issued",
                payment_id=payment_id,
                receipt_number=receipt.receipt_number,
                key_id=receipt.key_id,
            )
            return receipt

        if existing is None and not regenerate:
            # Lost the race to a concurrent issuer; its artifact is identical.
            winner = self.receipts.get(payment_id)
            if winner is not None:
                return winner

        self.receipts.record_regeneration(receipt)
        logger.info(
            "receipt_regenerated",
            payment_id=payment_id,
            receipt_number=receipt.receipt_number,
            key_id=receipt.key_id,
            requested=regenerate,
        )
        return self.receipts.get(payment_id) or receipt

    def build_payload(
        self,
        payment: PaymentRecord,
        vehicle: VehicleRecord,
        signed_fee: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Facts the receipt attests to. Signed as canonical JSON.

        Internal ids stay out of the payload: the artifact is served publicly.
        A fee block already signed for this payment is carried over unchanged,
        so publishing a new tariff never rewrites an issued receipt.
        """
        if signed_fee is None:
            fee = compute_fee(
                vehicle.category,
                vehicle.impounded_at,
                evaluated_at=payment.created_at,
                tariffs=self.tariffs.current(),
            )
            signed_fee = {
                "days_elapsed": fee.days_elapsed,
                "removal_fee": fee.removal_fee,
                "daily_rate": fee.daily_rate,
                "storage_fee": fee.storage_fee,
                "total_due": fee.total_due,
                "tariff_version": fee.tariff_version,
            }
        category = VehicleCategory.parse(vehicle.category)
        receipt_number = receipt_number_for(payment.payment_id)

        return {
            "receipt_number": receipt_number,
            "verification_url": self.verification_url(receipt_number),
            "municipality": self.municipality.to_dict(),
            "payment": {
                "reference": payment.external_reference,
                "amount": payment.amount,
                "method": payment.method.value,
                "method_label": payment.method.label,
                "origin": payment.origin.value,
                "paid_at": _display_time(payment.created_at),
                "created_at": payment.created_at,
            },
            "vehicle": {
                "license_plate": vehicle.license_plate,
                "category": vehicle.category,
                "category_label": category.label if category else vehicle.category,
                "make": vehicle.make,
                "model": vehicle.model,
                "color": vehicle.color,
                "owner_name": vehicle.owner_name,
                "impounded_at": _display_time(vehicle.impounded_at),
            },
            "fee": dict(signed_fee),
        }

    def read_artifact(self, payment_id: str) -> bytes:
        content = self.storage.read(payment_id)
        if content is None:
            raise NotFoundError("Receipt", payment_id)
        return content
