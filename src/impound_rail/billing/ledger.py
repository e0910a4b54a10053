"""
Payment Ledger

Append-only store of payments with two origination paths:

- internal: staff-entered, any status, attributed to a staff actor
- external: gateway callback, always completed, idempotent on the gateway's
  transaction reference

Every completed insert reconciles the vehicle in the same transaction, against
a snapshot that already contains the new row.
"""

import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Union
import structlog

from ..core.errors import DuplicateReference, NotFoundError, ValidationError
from ..persistence.database import Database, UniqueViolation
from ..persistence.models import (
    PaymentMethod,
    PaymentOrigin,
    PaymentRecord,
    PaymentStatus,
    VehicleRecord,
)
from ..persistence.repository import PaymentRepository, VehicleRepository
from .reconciliation import ReconciliationEngine, ReconciliationResult

logger = structlog.get_logger()


@dataclass(frozen=True)
class LedgerEntry:
    """A written payment and, if it completed, the reconciliation it triggered."""
    payment: PaymentRecord
    reconciliation: Optional[ReconciliationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "payment": self.payment.to_dict(),
            "reconciliation": self.reconciliation.to_dict() if self.reconciliation else None,
        }


def validate_amount(value: Any) -> int:
    """Amounts are non-negative whole currency units."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid amount: {value!r}", field="amount")
    if isinstance(value, int):
        amount = value
    else:
        try:
            decimal = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            raise ValidationError(f"Invalid amount: {value!r}", field="amount")
        if not decimal.is_finite() or decimal != decimal.to_integral_value():
            raise ValidationError(f"Amount must be a whole number: {value!r}", field="amount")
        amount = int(decimal)
    if amount < 0:
        raise ValidationError(f"Amount must not be negative: {value!r}", field="amount")
    return amount


def _parse_enum(enum_cls, value: Any, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationError(f"Invalid {field}: {value!r} (expected one of {allowed})", field=field)


def new_payment_id() -> str:
    return f"PAY-{uuid.uuid4().hex[:16].upper()}"


class PaymentLedger:
    """
    The payment ledger.

    There is no update or delete path: the schema rejects both for completed
    rows, so the completed total per vehicle can only grow.
    """

    def __init__(
        self,
        db: Database,
        engine: ReconciliationEngine,
        vehicles: Optional[VehicleRepository] = None,
        payments: Optional[PaymentRepository] = None,
    ):
        self.db = db
        self.engine = engine
        self.vehicles = vehicles or VehicleRepository(db)
        self.payments = payments or PaymentRepository(db)

    def record_internal_payment(
        self,
        vehicle_id: str,
        amount: Any,
        method: Union[str, PaymentMethod],
        status: Union[str, PaymentStatus] = PaymentStatus.COMPLETED,
        recorded_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Record a staff-entered payment.

        The caller marks status=completed only once funds are confirmed.
        """
        return self.record(
            vehicle_id, amount, method, PaymentOrigin.INTERNAL,
            status=status, recorded_by=recorded_by, notes=notes,
        ).payment

    def record_external_payment(
        self,
        vehicle_id: str,
        amount: Any,
        method: Union[str, PaymentMethod],
        external_reference: str,
        notes: Optional[str] = None,
    ) -> PaymentRecord:
        """
        Record a gateway callback as a completed payment.

        Raises DuplicateReference, carrying the first record, when the gateway
        redelivers the same transaction.
        """
        return self.record(
            vehicle_id, amount, method, PaymentOrigin.EXTERNAL,
            external_reference=external_reference, notes=notes,
        ).payment

    def record(
        self,
        vehicle_id: str,
        amount: Any,
        method: Union[str, PaymentMethod],
        origin: Union[str, PaymentOrigin],
        external_reference: Optional[str] = None,
        status: Union[str, PaymentStatus] = PaymentStatus.COMPLETED,
        recorded_by: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> LedgerEntry:
        """Single write path for both origins."""
        origin = _parse_enum(PaymentOrigin, origin, "origin")
        payment = PaymentRecord(
            payment_id=new_payment_id(),
            vehicle_id=vehicle_id,
            amount=validate_amount(amount),
            method=_parse_enum(PaymentMethod, method, "method"),
            origin=origin,
            status=_parse_enum(PaymentStatus, status, "status"),
            recorded_by=recorded_by if origin == PaymentOrigin.INTERNAL else None,
            notes=notes,
            created_at=self.engine.clock().isoformat(),
        )

        if origin == PaymentOrigin.EXTERNAL:
            if not isinstance(external_reference, str) or not external_reference.strip():
                raise ValidationError("External payments require a reference", field="external_reference")
            if payment.status != PaymentStatus.COMPLETED:
                raise ValidationError("External payments are recorded as completed", field="status")
            payment.external_reference = external_reference.strip()

            # Fast path; the unique index below is what actually guarantees it.
            existing = self.payments.get_by_external_reference(payment.external_reference)
            if existing is not None:
                logger.info(
                    "payment_duplicate_reference",
                    external_reference=payment.external_reference,
                    payment_id=existing.payment_id,
                )
                raise DuplicateReference(payment.external_reference, existing)
        elif external_reference:
            raise ValidationError("Internal payments carry no external reference", field="external_reference")

        try:
            vehicle, result = self._append(payment)
        except UniqueViolation:
            existing = self.payments.get_by_external_reference(payment.external_reference or "")
            if existing is None:
                raise
            logger.info(
                "payment_duplicate_reference",
                external_reference=payment.external_reference,
                payment_id=existing.payment_id,
                concurrent=True,
            )
            raise DuplicateReference(payment.external_reference, existing)

        logger.info(
            "payment_recorded",
            payment_id=payment.payment_id,
            vehicle_id=vehicle_id,
            amount=payment.amount,
            origin=payment.origin.value,
            method=payment.method.value,
            status=payment.status.value,
            recorded_by=payment.recorded_by,
        )

        if result is not None:
            self.engine.after_commit(vehicle, result)
        return LedgerEntry(payment=payment, reconciliation=result)

    def _append(self, payment: PaymentRecord):
        """Insert and reconcile as one unit, serialized per vehicle."""
        with self.db.transaction() as tx:
            vehicle: Optional[VehicleRecord] = self.vehicles.lock(payment.vehicle_id, tx)
            if vehicle is None:
                raise NotFoundError("Vehicle", payment.vehicle_id)

            self.payments.insert(payment, tx)

            result = None
            if payment.is_completed:
                result = self.engine.reconcile_locked(vehicle, tx)
        return vehicle, result

    def get(self, payment_id: str) -> PaymentRecord:
        payment = self.payments.get(payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def get_by_reference(self, reference: str) -> PaymentRecord:
        """Resolve a payment ID or a gateway transaction reference."""
        payment = self.payments.find_by_reference(reference.strip())
        if payment is None:
            raise NotFoundError("Payment", reference)
        return payment

    def list_for_vehicle(self, vehicle_id: str, limit: int = 100) -> List[PaymentRecord]:
        if self.vehicles.get(vehicle_id) is None:
            raise NotFoundError("Vehicle", vehicle_id)
        return self.payments.list_for_vehicle(vehicle_id, limit)

    def total_paid(self, vehicle_id: str) -> int:
        return self.payments.completed_total(vehicle_id)
