"""
Reconciliation Engine

Compares a vehicle's completed payments with the amount currently due and moves
it from `impounded` to `ready_for_release` once fully paid.

`reconcile_locked` runs inside the ledger's transaction, after the new payment
row is written and while the vehicle row is held, so two concurrent payments can
never both read a pre-payment total. Notifications go out only after commit and
their failure never undoes the transition.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
import structlog

from ..core.errors import DownstreamNotifyError, NotFoundError
from ..core.fees import FeeBreakdown, compute_fee
from ..core.status import VehicleStatus
from ..core.tariff import TariffRegistry
from ..persistence.database import Database, Transaction
from ..persistence.models import VehicleRecord
from ..persistence.repository import PaymentRepository, VehicleRepository
from .notifier import LogNotifier, Notifier

logger = structlog.get_logger()

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ReconciliationResult:
    """Outcome of one reconciliation pass."""
    vehicle_id: str
    fee: FeeBreakdown
    total_paid: int
    previous_status: VehicleStatus
    status: VehicleStatus
    transitioned: bool

    @property
    def total_due(self) -> int:
        return self.fee.total_due

    @property
    def balance(self) -> int:
        """Amount still owed, zero once fully paid."""
        return max(self.fee.total_due - self.total_paid, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vehicle_id": self.vehicle_id,
            "total_due": self.total_due,
            "total_paid": self.total_paid,
            "balance": self.balance,
            "previous_status": self.previous_status.value,
            "status": self.status.value,
            "transitioned": self.transitioned,
            "fee": self.fee.to_dict(),
        }


class ReconciliationEngine:
    """Drives vehicle status from the payment ledger."""

    def __init__(
        self,
        db: Database,
        tariffs: Optional[TariffRegistry] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Clock] = None,
        vehicles: Optional[VehicleRepository] = None,
        payments: Optional[PaymentRepository] = None,
    ):
        self.db = db
        self.tariffs = tariffs or TariffRegistry()
        self.notifier = notifier or LogNotifier()
        self.clock = clock or utc_now
        self.vehicles = vehicles or VehicleRepository(db)
        self.payments = payments or PaymentRepository(db)

    def reconcile_locked(self, vehicle: VehicleRecord, tx: Transaction) -> ReconciliationResult:
        """
        Reconcile a vehicle whose row is locked by `tx`.

        The caller must have written any new payment through the same
        transaction before calling.
        """
        fee = compute_fee(
            vehicle.category,
            vehicle.impounded_at,
            evaluated_at=self.clock(),
            tariffs=self.tariffs.current(),
        )
        total_paid = self.payments.completed_total(vehicle.vehicle_id, tx)

        status = vehicle.status
        transitioned = False
        if total_paid >= fee.total_due and vehicle.status == VehicleStatus.IMPOUNDED:
            transitioned = self.vehicles.update_status(
                vehicle.vehicle_id,
                VehicleStatus.IMPOUNDED,
                VehicleStatus.READY_FOR_RELEASE,
                tx,
            )
            if transitioned:
                status = VehicleStatus.READY_FOR_RELEASE

        logger.info(
            "vehicle_reconciled",
            vehicle_id=vehicle.vehicle_id,
            total_due=fee.total_due,
            total_paid=total_paid,
            days_elapsed=fee.days_elapsed,
            tariff_version=fee.tariff_version,
            status=status.value,
            transitioned=transitioned,
        )

        return ReconciliationResult(
            vehicle_id=vehicle.vehicle_id,
            fee=fee,
            total_paid=total_paid,
            previous_status=vehicle.status,
            status=status,
            transitioned=transitioned,
        )

    def reconcile(self, vehicle_id: str) -> ReconciliationResult:
        """Reconcile on demand, in its own transaction."""
        with self.db.transaction() as tx:
            vehicle = self.vehicles.lock(vehicle_id, tx)
            if vehicle is None:
                raise NotFoundError("Vehicle", vehicle_id)
            result = self.reconcile_locked(vehicle, tx)

        self.after_commit(vehicle, result)
        return result

    def after_commit(self, vehicle: VehicleRecord, result: ReconciliationResult) -> None:
        """Send the release notice for a committed transition. Never raises."""
        if not result.transitioned:
            return

        released = replace(vehicle, status=result.status)
        logger.info(
            "vehicle_ready_for_release",
            vehicle_id=vehicle.vehicle_id,
            total_due=result.total_due,
            total_paid=result.total_paid,
        )
        try:
            self.notifier.notify_ready(released, result.total_due, result.total_paid)
        except Exception as e:
            error = DownstreamNotifyError(f"Release notice failed for {vehicle.vehicle_id}: {e}")
            logger.error(
                "notify_failed",
                vehicle_id=vehicle.vehicle_id,
                notifier=type(self.notifier).__name__,
                error=str(error),
            )
