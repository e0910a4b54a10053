"""
Impound Service

The operations the outside world calls: fee lookups, payment recording from
either origin, receipts, public verification and the external status moves.
The HTTP API and the CLI are thin shells around this class.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import structlog

from .billing.ledger import PaymentLedger
from .billing.notifier import LogNotifier, Notifier
from .billing.reconciliation import Clock, ReconciliationEngine, ReconciliationResult, utc_now
from .config import Settings
from .core.errors import DuplicateReference, NotFoundError, RenderError, ValidationError
from .core.fees import FeeBreakdown, compute_fee, parse_timestamp
from .core.status import VehicleStatus
from .core.tariff import TariffRegistry, VehicleCategory
from .crypto.keys import KeyManager
from .persistence.database import Database
from .persistence.models import PaymentMethod, PaymentOrigin, PaymentRecord, PaymentStatus, ReceiptRecord, VehicleRecord
from .persistence.repository import VehicleRepository
from .receipts.issuer import ReceiptIssuer
from .receipts.storage import ReceiptStorage
from .receipts.verifier import ReceiptVerifier, RedactedSummary

logger = structlog.get_logger()

# Targets reachable through advance_status. ready_for_release is only ever set
# by reconciliation.
EXTERNAL_TARGETS = (VehicleStatus.CLAIMED, VehicleStatus.RELEASED)


@dataclass(frozen=True)
class ReceiptLink:
    """Where a receipt lives and how to check it."""
    payment_id: str
    receipt_number: str
    receipt_url: str
    verification_url: str
    verification_code: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment_id": self.payment_id,
            "receipt_number": self.receipt_number,
            "receipt_url": self.receipt_url,
            "verification_url": self.verification_url,
            "verification_code": self.verification_code,
        }


@dataclass(frozen=True)
class PaymentOutcome:
    """
    Result of record_payment.

    `duplicate` is True when a gateway redelivered a reference that was already
    recorded; `payment` is then the original record and nothing was written.
    """
    payment: PaymentRecord
    duplicate: bool = False
    reconciliation: Optional[ReconciliationResult] = None
    receipt: Optional[ReceiptLink] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment": self.payment.to_dict(),
            "duplicate": self.duplicate,
            "reconciliation": self.reconciliation.to_dict() if self.reconciliation else None,
            "receipt": self.receipt.to_dict() if self.receipt else None,
        }


@dataclass(frozen=True)
class VehicleBalance:
    vehicle_id: str
    license_plate: str
    status: VehicleStatus
    fee: FeeBreakdown
    total_paid: int

    @property
    def balance(self) -> int:
        return max(self.fee.total_due - self.total_paid, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "license_plate": self.license_plate,
            "status": self.status.value,
            "total_due": self.fee.total_due,
            "total_paid": self.total_paid,
            "balance": self.balance,
            "fee": self.fee.to_dict(),
        }


class ImpoundService:
    """
    Facade over ledger, reconciliation and receipts.

    Usage:
        service = ImpoundService.from_settings(load_settings())
        outcome = service.record_payment(vid, 35000, "cash", "internal", recorded_by="agent-7")
        link = service.get_receipt(outcome.payment.payment_id)
    """

    def __init__(
        self,
        db: Database,
        keys: KeyManager,
        settings: Optional[Settings] = None,
        tariffs: Optional[TariffRegistry] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or Settings()
        self.db = db
        self.keys = keys
        self.tariffs = tariffs or TariffRegistry(self.settings.load_tariffs())
        self.clock = clock or utc_now

        self.vehicles = VehicleRepository(db)
        self.engine = ReconciliationEngine(
            db,
            tariffs=self.tariffs,
            notifier=notifier or LogNotifier(),
            clock=self.clock,
            vehicles=self.vehicles,
        )
        self.ledger = PaymentLedger(db, self.engine, vehicles=self.vehicles, payments=self.engine.payments)
        self.issuer = ReceiptIssuer(
            db,
            keys,
            ReceiptStorage(self.settings.receipt_storage_path),
            public_base_url=self.settings.public_base_url,
            municipality=self.settings.municipality,
            tariffs=self.tariffs,
        )
        self.verifier = ReceiptVerifier(db, keys)

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "ImpoundService":
        db = Database(settings.database_url)
        db.initialize()
        keys = KeyManager(settings.key_storage_path, master_secret=settings.key_master_secret or "")
        return cls(db, keys, settings=settings, **kwargs)

    # ------------------------------------------------------------------
    # Vehicles
    # ------------------------------------------------------------------

    def register_vehicle(
        self,
        license_plate: str,
        category: Union[str, VehicleCategory],
        impounded_at: Union[str, datetime],
        owner_name: Optional[str] = None,
        owner_phone: Optional[str] = None,
        owner_email: Optional[str] = None,
        make: Optional[str] = None,
        model: Optional[str] = None,
        color: Optional[str] = None,
        vehicle_id: Optional[str] = None,
    ) -> VehicleRecord:
        """Intake. Owned by the vehicle registry; kept minimal here."""
        if not isinstance(license_plate, str) or not license_plate.strip():
            raise ValidationError("License plate is required", field="license_plate")
        parsed = VehicleCategory.parse(category)
        vehicle = VehicleRecord(
            vehicle_id=vehicle_id or f"VEH-{uuid.uuid4().hex[:12].upper()}",
            license_plate=license_plate.strip().upper(),
            category=parsed.value if parsed else category.strip(),
            impounded_at=parse_timestamp(impounded_at, field="impounded_at").isoformat(),
            make=make,
            model=model,
            color=color,
            owner_name=owner_name,
            owner_phone=owner_phone,
            owner_email=owner_email,
        )
        return self.vehicles.register(vehicle)

    def get_vehicle(self, vehicle_id: str) -> VehicleRecord:
        vehicle = self.vehicles.get(vehicle_id)
        if vehicle is None:
            raise NotFoundError("Vehicle", vehicle_id)
        return vehicle

    def advance_status(self, vehicle_id: str, target: Union[str, VehicleStatus]) -> VehicleRecord:
        """
        Apply a status change decided outside the payment core (claim, release).

        Raises InvalidTransition when the table does not allow it.
        """
        target = VehicleStatus.parse(target)
        if target not in EXTERNAL_TARGETS:
            raise ValidationError(
                f"Status {target.value} is set by payment reconciliation only",
                field="status",
            )

        with self.db.transaction() as tx:
            vehicle = self.vehicles.lock(vehicle_id, tx)
            if vehicle is None:
                raise NotFoundError("Vehicle", vehicle_id)
            self.vehicles.update_status(vehicle_id, vehicle.status, target, tx)

        logger.info("vehicle_status_advanced", vehicle_id=vehicle_id, old=vehicle.status.value, new=target.value)
        return self.get_vehicle(vehicle_id)

    # ------------------------------------------------------------------
    # Fees
    # ------------------------------------------------------------------

    def compute_fee(self, vehicle_id: str, at: Optional[Union[str, datetime]] = None) -> FeeBreakdown:
        vehicle = self.get_vehicle(vehicle_id)
        return self._fee_for(vehicle, at)

    def compute_fee_by_plate(self, license_plate: str, at: Optional[Union[str, datetime]] = None) -> FeeBreakdown:
        """Public lookup by plate."""
        if not isinstance(license_plate, str) or not license_plate.strip():
            raise ValidationError("License plate is required", field="license_plate")
        vehicle = self.vehicles.get_by_plate(license_plate)
        if vehicle is None:
            raise NotFoundError("Vehicle", license_plate)
        return self._fee_for(vehicle, at)

    def _fee_for(self, vehicle: VehicleRecord, at: Optional[Union[str, datetime]]) -> FeeBreakdown:
        return compute_fee(
            vehicle.category,
            vehicle.impounded_at,
            evaluated_at=at if at is not None else self.clock(),
            tariffs=self.tariffs.current(),
        )

    def vehicle_balance(self, vehicle_id: str) -> VehicleBalance:
        vehicle = self.get_vehicle(vehicle_id)
        return VehicleBalance(
            vehicle_id=vehicle.vehicle_id,
            license_plate=vehicle.license_plate,
            status=vehicle.status,
            fee=self._fee_for(vehicle, None),
            total_paid=self.ledger.total_paid(vehicle_id),
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def record_payment(
        self,
        vehicle_id: str,
        amount: Any,
        method: Union[str, PaymentMethod],
        origin: Union[str, PaymentOrigin],
        external_reference: Optional[str] = None,
        status: Union[str, PaymentStatus] = PaymentStatus.COMPLETED,
        recorded_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PaymentOutcome:
        """
        Record a payment from either origin.

        A replayed gateway reference is not an error: the outcome carries the
        original record with duplicate=True.
        """
        try:
            entry = self.ledger.record(
                vehicle_id,
                amount,
                method,
                origin,
                external_reference=external_reference,
                status=status,
                recorded_by=recorded_by,
                notes=notes,
            )
        except DuplicateReference as e:
            existing = e.existing
            stored = self.issuer.receipts.get(existing.payment_id) if existing.is_completed else None
            return PaymentOutcome(
                payment=existing,
                duplicate=True,
                receipt=self._link(stored) if stored else None,
            )

        receipt = None
        if entry.payment.is_completed:
            receipt = self._issue_after_commit(entry.payment)
        return PaymentOutcome(payment=entry.payment, reconciliation=entry.reconciliation, receipt=receipt)

    def _issue_after_commit(self, payment: PaymentRecord) -> Optional[ReceiptLink]:
        # The payment is committed; a receipt that cannot be produced now is
        # produced later through get_receipt.
        try:
            return self._link(self.issuer.issue(payment.payment_id))
        except RenderError as e:
            logger.warning("receipt_deferred", payment_id=payment.payment_id, error=str(e))
            return None

    def list_payments(self, vehicle_id: str, limit: int = 100) -> List[PaymentRecord]:
        return self.ledger.list_for_vehicle(vehicle_id, limit)

    def reconcile(self, vehicle_id: str) -> ReconciliationResult:
        return self.engine.reconcile(vehicle_id)

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def get_receipt(self, payment_id: str, regenerate: bool = False) -> ReceiptLink:
        """Receipt for a completed payment, issuing it on first request."""
        return self._link(self.issuer.issue(payment_id, regenerate=regenerate))

    def get_receipt_by_reference(self, reference: str) -> ReceiptLink:
        """Same as get_receipt, keyed by payment id or gateway reference."""
        payment = self.ledger.get_by_reference(reference)
        return self.get_receipt(payment.payment_id)

    def read_receipt_artifact(self, payment_id: str) -> bytes:
        return self.issuer.read_artifact(payment_id)

    def verify_receipt(self, reference: str) -> RedactedSummary:
        return self.verifier.verify(reference)

    def _link(self, receipt: ReceiptRecord) -> ReceiptLink:
        return ReceiptLink(
            payment_id=receipt.payment_id,
            receipt_number=receipt.receipt_number,
            receipt_url=self.issuer.artifact_url(receipt.payment_id),
            verification_url=self.issuer.verification_url(receipt.receipt_number),
            verification_code=receipt.verification_code,
        )
