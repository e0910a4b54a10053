"""
Tests for the Payment Ledger
"""

import sqlite3
import threading
from decimal import Decimal

import pytest

from impound_rail.billing.ledger import validate_amount
from impound_rail.core.errors import DuplicateReference, NotFoundError, ValidationError
from impound_rail.persistence.models import PaymentMethod, PaymentOrigin, PaymentStatus


class TestAmountValidation:
    """Amounts are non-negative whole currency units."""

    @pytest.mark.parametrize("value,expected", [
        (0, 0),
        (15000, 15000),
        ("15000", 15000),
        (" 15000 ", 15000),
        (Decimal("15000.00"), 15000),
        (15000.0, 15000),
    ])
    def test_accepted(self, value, expected):
        assert validate_amount(value) == expected

    @pytest.mark.parametrize("value", [-1, "-500", 10.5, "12.25", "abc", "", None, True, False, float("nan")])
    def test_rejected(self, value):
        with pytest.raises(ValidationError) as exc:
            validate_amount(value)
        assert exc.value.field == "amount"


class TestInternalPayments:
    """Staff-entered payments."""

    def test_record(self, service, vehicle):
        payment = service.ledger.record_internal_payment(
            vehicle.vehicle_id, 10000, "cash", recorded_by="agent-07", notes="guichet 2"
        )

        assert payment.payment_id.startswith("PAY-")
        assert payment.origin == PaymentOrigin.INTERNAL
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.method == PaymentMethod.CASH
        assert payment.recorded_by == "agent-07"
        assert payment.external_reference is None
        assert service.ledger.get(payment.payment_id) == payment

    def test_pending_does_not_count(self, service, vehicle):
        service.ledger.record_internal_payment(vehicle.vehicle_id, 35000, "card", status="pending")

        assert service.ledger.total_paid(vehicle.vehicle_id) == 0
        assert len(service.list_payments(vehicle.vehicle_id)) == 1

    def test_internal_rejects_external_reference(self, service, vehicle):
        with pytest.raises(ValidationError):
            service.ledger.record(vehicle.vehicle_id, 1000, "cash", "internal", external_reference="KKP-1")

    def test_unknown_method(self, service, vehicle):
        with pytest.raises(ValidationError) as exc:
            service.ledger.record_internal_payment(vehicle.vehicle_id, 1000, "bitcoin")
        assert exc.value.field == "method"

    def test_unknown_origin(self, service, vehicle):
        with pytest.raises(ValidationError):
            service.ledger.record(vehicle.vehicle_id, 1000, "cash", "walk-in")

    def test_unknown_vehicle_writes_nothing(self, service, temp_db):
        with pytest.raises(NotFoundError):
            service.ledger.record_internal_payment("VEH-NOPE", 1000, "cash")

        assert temp_db.execute("SELECT COUNT(*) AS cnt FROM payments")[0]["cnt"] == 0

    def test_invalid_amount_writes_nothing(self, service, vehicle, temp_db):
        with pytest.raises(ValidationError):
            service.ledger.record_internal_payment(vehicle.vehicle_id, -5000, "cash")

        assert temp_db.execute("SELECT COUNT(*) AS cnt FROM payments")[0]["cnt"] == 0


class TestExternalPayments:
    """Gateway callbacks."""

    def test_record(self, service, vehicle):
        payment = service.ledger.record_external_payment(
            vehicle.vehicle_id, 35000, "mobile_money", "KKP-TX-0001"
        )

        assert payment.origin == PaymentOrigin.EXTERNAL
        assert payment.status == PaymentStatus.COMPLETED
        assert payment.reference == "KKP-TX-0001"
        assert service.ledger.get_by_reference("KKP-TX-0001") == payment

    def test_duplicate_returns_first_record(self, service, vehicle):
        first = service.ledger.record_external_payment(vehicle.vehicle_id, 10000, "mobile_money", "KKP-TX-0002")

        with pytest.raises(DuplicateReference) as exc:
            service.ledger.record_external_payment(vehicle.vehicle_id, 10000, "mobile_money", "KKP-TX-0002")

        assert exc.value.existing == first
        assert service.ledger.total_paid(vehicle.vehicle_id) == 10000

    def test_duplicate_through_service_is_not_an_error(self, service, vehicle):
        first = service.record_payment(vehicle.vehicle_id, 10000, "mobile_money", "external", external_reference="KKP-3")
        again = service.record_payment(vehicle.vehicle_id, 10000, "mobile_money", "external", external_reference="KKP-3")

        assert first.duplicate is False
        assert again.duplicate is True
        assert again.payment.payment_id == first.payment.payment_id
        assert len(service.list_payments(vehicle.vehicle_id)) == 1

    @pytest.mark.parametrize("reference", [None, "", "   "])
    def test_reference_required(self, service, vehicle, reference):
        with pytest.raises(ValidationError) as exc:
            service.ledger.record(vehicle.vehicle_id, 1000, "mobile_money", "external", external_reference=reference)
        assert exc.value.field == "external_reference"

    def test_must_be_completed(self, service, vehicle):
        with pytest.raises(ValidationError):
            service.ledger.record(
                vehicle.vehicle_id, 1000, "mobile_money", "external",
                external_reference="KKP-4", status="pending",
            )

    def test_concurrent_redelivery_records_once(self, service, vehicle):
        """Simultaneous deliveries of one callback produce exactly one row."""
        outcomes = []
        errors = []
        barrier = threading.Barrier(6)

        def deliver():
            barrier.wait()
            try:
                outcomes.append(service.record_payment(
                    vehicle.vehicle_id, 12000, "mobile_money", "external", external_reference="KKP-RACE"
                ))
            except Exception as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=deliver) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(outcomes) == 6
        assert sum(1 for o in outcomes if not o.duplicate) == 1
        assert len({o.payment.payment_id for o in outcomes}) == 1
        assert service.ledger.total_paid(vehicle.vehicle_id) == 12000


class TestAppendOnly:
    """The schema itself refuses to rewrite history."""

    def test_delete_rejected(self, service, vehicle, temp_db):
        service.ledger.record_internal_payment(vehicle.vehicle_id, 1000, "cash")

        with pytest.raises(sqlite3.DatabaseError):
            temp_db.execute("DELETE FROM payments")
        assert service.ledger.total_paid(vehicle.vehicle_id) == 1000

    def test_completed_update_rejected(self, service, vehicle, temp_db):
        payment = service.ledger.record_internal_payment(vehicle.vehicle_id, 1000, "cash")

        with pytest.raises(sqlite3.DatabaseError):
            temp_db.execute("UPDATE payments SET amount = 0 WHERE payment_id = ?", (payment.payment_id,))

    def test_total_only_grows(self, service, vehicle):
        totals = []
        for amount in (1000, 0, 2500, 4000):
            service.ledger.record_internal_payment(vehicle.vehicle_id, amount, "cash")
            totals.append(service.ledger.total_paid(vehicle.vehicle_id))

        assert totals == sorted(totals)
        assert totals[-1] == 7500


class TestLookups:
    """Read paths."""

    def test_unknown_payment(self, service):
        with pytest.raises(NotFoundError):
            service.ledger.get("PAY-UNKNOWN")

    def test_unknown_reference(self, service):
        with pytest.raises(NotFoundError):
            service.ledger.get_by_reference("KKP-NEVER")

    def test_list_for_unknown_vehicle(self, service):
        with pytest.raises(NotFoundError):
            service.list_payments("VEH-NOPE")
