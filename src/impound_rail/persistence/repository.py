"""
Repository Layer for Impound Rail

Row-level access for vehicles, ledger payments and receipts. Every method takes
an optional `tx` so callers can compose several calls into one transaction.
"""

from typing import Any, Dict, List, Optional, Union
import structlog

from ..core.status import VehicleStatus, check_transition
from .database import Database, Transaction, get_database
from .models import PaymentRecord, PaymentStatus, ReceiptRecord, VehicleRecord, utcnow_iso

logger = structlog.get_logger()

Executor = Union[Database, Transaction]


class _Repository:
    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def _exec(self, query: str, params: tuple = (), tx: Optional[Transaction] = None) -> List[Dict[str, Any]]:
        executor: Executor = tx or self.db
        return executor.execute(query, params)


class VehicleRepository(_Repository):
    """Repository for impound records."""

    def register(self, vehicle: VehicleRecord) -> VehicleRecord:
        """Record a vehicle at intake."""
        self._exec(
            """INSERT INTO vehicles
               (vehicle_id, license_plate, category, impounded_at, status,
                make, model, color, owner_name, owner_phone, owner_email,
                created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            vehicle.to_db_tuple()
        )
        logger.info("vehicle_registered", vehicle_id=vehicle.vehicle_id, category=vehicle.category)
        return vehicle

    def get(self, vehicle_id: str, tx: Optional[Transaction] = None) -> Optional[VehicleRecord]:
        """Get a vehicle by ID."""
        results = self._exec("SELECT * FROM vehicles WHERE vehicle_id = ?", (vehicle_id,), tx)
        return VehicleRecord.from_row(results[0]) if results else None

    def get_by_plate(self, license_plate: str) -> Optional[VehicleRecord]:
        """Get a vehicle by exact license plate (case-insensitive)."""
        results = self._exec(
            "SELECT * FROM vehicles WHERE UPPER(license_plate) = UPPER(?)",
            (license_plate.strip(),)
        )
        return VehicleRecord.from_row(results[0]) if results else None

    def lock(self, vehicle_id: str, tx: Transaction) -> Optional[VehicleRecord]:
        """Read a vehicle and hold it for the rest of the transaction."""
        row = tx.lock_vehicle(vehicle_id)
        return VehicleRecord.from_row(row) if row else None

    def update_status(
        self,
        vehicle_id: str,
        current: VehicleStatus,
        target: VehicleStatus,
        tx: Optional[Transaction] = None,
    ) -> bool:
        """
        Move a vehicle along the transition table.

        The write only applies if the row still holds `current`, so a stale
        reader can't overwrite a newer status. Returns whether a row changed.
        """
        target = check_transition(current, target)
        results = self._exec(
            """UPDATE vehicles SET status = ?, updated_at = ?
               WHERE vehicle_id = ? AND status = ?
               RETURNING vehicle_id""",
            (target.value, utcnow_iso(), vehicle_id, current.value),
            tx,
        )
        changed = bool(results)
        if changed:
            logger.info("vehicle_status_updated", vehicle_id=vehicle_id, old=current.value, new=target.value)
        return changed

    def count_by_status(self) -> Dict[str, int]:
        """Vehicle counts per status."""
        results = self._exec("SELECT status, COUNT(*) as cnt FROM vehicles GROUP BY status")
        return {r["status"]: int(r["cnt"]) for r in results}


class PaymentRepository(_Repository):
    """Repository for ledger payments. Insert and read only."""

    def insert(self, payment: PaymentRecord, tx: Optional[Transaction] = None) -> PaymentRecord:
        """Append a payment. Raises UniqueViolation on a replayed external reference."""
        self._exec(
            """INSERT INTO payments
               (payment_id, vehicle_id, amount, method, origin, external_reference,
                status, recorded_by, notes, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            payment.to_db_tuple(),
            tx,
        )
        logger.debug("payment_inserted", payment_id=payment.payment_id, origin=payment.origin.value)
        return payment

    def get(self, payment_id: str, tx: Optional[Transaction] = None) -> Optional[PaymentRecord]:
        """Get a payment by ID."""
        results = self._exec("SELECT * FROM payments WHERE payment_id = ?", (payment_id,), tx)
        return PaymentRecord.from_row(results[0]) if results else None

    def get_by_external_reference(
        self,
        external_reference: str,
        tx: Optional[Transaction] = None,
    ) -> Optional[PaymentRecord]:
        """Get the external payment recorded under a gateway reference."""
        results = self._exec(
            "SELECT * FROM payments WHERE origin = 'external' AND external_reference = ?",
            (external_reference,),
            tx,
        )
        return PaymentRecord.from_row(results[0]) if results else None

    def find_by_reference(self, reference: str) -> Optional[PaymentRecord]:
        """Look up by payment ID first, then by gateway reference."""
        return self.get(reference) or self.get_by_external_reference(reference)

    def list_for_vehicle(self, vehicle_id: str, limit: int = 100) -> List[PaymentRecord]:
        """Payments for a vehicle, newest first."""
        results = self._exec(
            "SELECT * FROM payments WHERE vehicle_id = ? ORDER BY created_at DESC LIMIT ?",
            (vehicle_id, limit)
        )
        return [PaymentRecord.from_row(r) for r in results]

    def completed_total(self, vehicle_id: str, tx: Optional[Transaction] = None) -> int:
        """Sum of completed payment amounts for a vehicle."""
        results = self._exec(
            "SELECT COALESCE(SUM(amount), 0) as total FROM payments WHERE vehicle_id = ? AND status = ?",
            (vehicle_id, PaymentStatus.COMPLETED.value),
            tx,
        )
        return int(results[0]["total"]) if results else 0


class ReceiptRepository(_Repository):
    """Repository for receipt records."""

    def insert_if_absent(self, receipt: ReceiptRecord) -> bool:
        """Create the receipt row unless one exists for the payment. Returns True if created."""
        results = self._exec(
            """INSERT INTO receipts
               (payment_id, receipt_number, artifact_path, verification_code, payload,
                content_hash, signature, key_id, issued_at, regenerated_at, issue_count)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (payment_id) DO NOTHING
               RETURNING payment_id""",
            receipt.to_db_tuple()
        )
        created = bool(results)
        if created:
            logger.debug("receipt_row_created", payment_id=receipt.payment_id, receipt_number=receipt.receipt_number)
        return created

    def record_regeneration(self, receipt: ReceiptRecord) -> None:
        """Point an existing receipt at freshly written artifact content."""
        self._exec(
            """UPDATE receipts SET
                artifact_path = ?, verification_code = ?, payload = ?, content_hash = ?,
                signature = ?, key_id = ?, regenerated_at = ?, issue_count = issue_count + 1
               WHERE payment_id = ?""",
            (
                receipt.artifact_path,
                receipt.verification_code,
                receipt.payload,
                receipt.content_hash,
                receipt.signature,
                receipt.key_id,
                utcnow_iso(),
                receipt.payment_id,
            )
        )
        logger.debug("receipt_row_regenerated", payment_id=receipt.payment_id)

    def get(self, payment_id: str) -> Optional[ReceiptRecord]:
        """Get the receipt for a payment."""
        results = self._exec("SELECT * FROM receipts WHERE payment_id = ?", (payment_id,))
        return ReceiptRecord.from_row(results[0]) if results else None

    def get_by_number(self, receipt_number: str) -> Optional[ReceiptRecord]:
        """Get a receipt by its receipt number."""
        results = self._exec(
            "SELECT * FROM receipts WHERE receipt_number = ?",
            (receipt_number.strip().upper(),)
        )
        return ReceiptRecord.from_row(results[0]) if results else None

    def count(self) -> int:
        """Count issued receipts."""
        results = self._exec("SELECT COUNT(*) as cnt FROM receipts")
        return int(results[0]["cnt"]) if results else 0
