"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["KEY_MASTER_SECRET"] = "test-master-secret-for-tests"
os.environ.pop("GATEWAY_SECRET", None)

from impound_rail.billing.notifier import CallbackNotifier
from impound_rail.config import Settings
from impound_rail.core.tariff import Tariff, TariffTable, VehicleCategory
from impound_rail.crypto.keys import KeyManager
from impound_rail.persistence.database import Database
from impound_rail.service import ImpoundService

FIXED_NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Injectable "now" that only moves when told to."""

    def __init__(self, now: datetime = FIXED_NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def temp_db(tmp_path):
    """File-backed SQLite database, so worker threads share it."""
    db = Database(f"sqlite:///{tmp_path / 'impound_rail_test.db'}")
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def temp_keys_dir(tmp_path):
    """Directory for encrypted key storage."""
    path = tmp_path / "keys"
    path.mkdir()
    return str(path)


@pytest.fixture
def keys(temp_keys_dir):
    return KeyManager(temp_keys_dir, master_secret="test-master-secret-for-tests")


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def settings(tmp_path, temp_keys_dir):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'impound_rail_test.db'}",
        receipt_storage_path=str(tmp_path / "receipts"),
        public_base_url="https://fourriere.cotonou.example",
        key_storage_path=temp_keys_dir,
        key_master_secret="test-master-secret-for-tests",
        api_key="test-key-12345",
    )


@pytest.fixture
def notifications():
    """Release notices received by the test notifier."""
    return []


@pytest.fixture
def notifier(notifications):
    notifier = CallbackNotifier()
    notifier.register_callback(lambda vehicle, due, paid: notifications.append((vehicle.vehicle_id, due, paid)))
    return notifier


@pytest.fixture
def twenty_thousand_tariff():
    """Snapshot where a SMALL_VEHICLE owes exactly 20000 on its first day."""
    return TariffTable(
        version="test-20000",
        rates={VehicleCategory.SMALL_VEHICLE: Tariff(removal_fee=15000, daily_rate=5000)},
    )


@pytest.fixture
def service(temp_db, keys, settings, clock, notifier):
    return ImpoundService(temp_db, keys, settings=settings, notifier=notifier, clock=clock)


@pytest.fixture
def vehicle(service):
    """SMALL_VEHICLE impounded two hours before FIXED_NOW: 35000 due."""
    return service.register_vehicle(
        license_plate="AB-1234-RB",
        category="SMALL_VEHICLE",
        impounded_at=FIXED_NOW - timedelta(hours=2),
        owner_name="Koffi Mensah",
        owner_phone="+229 97 00 00 00",
        make="Toyota",
        model="Corolla",
        color="Gris",
        vehicle_id="VEH-TEST-0001",
    )


@pytest.fixture
def sample_payment(service, vehicle):
    """A completed cash payment covering the full amount."""
    return service.record_payment(
        vehicle.vehicle_id, 35000, "cash", "internal", recorded_by="agent-07"
    ).payment
