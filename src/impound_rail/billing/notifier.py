"""
Release Notifier

Fire-and-forget "vehicle ready for release" messages. Transport (SMS, email,
push) lives outside this package; implementations only need `notify_ready`.
"""

from abc import ABC, abstractmethod
from typing import Callable, List
import structlog

from ..persistence.models import VehicleRecord

logger = structlog.get_logger()


class Notifier(ABC):
    """Collaborator told when a vehicle becomes releasable."""

    @abstractmethod
    def notify_ready(self, vehicle: VehicleRecord, total_due: int, total_paid: int) -> None:
        """Send the message. May raise; callers treat failure as non-fatal."""
        pass


class LogNotifier(Notifier):
    """Writes the notification to the structured log."""

    def notify_ready(self, vehicle: VehicleRecord, total_due: int, total_paid: int) -> None:
        logger.info(
            "vehicle_ready_for_release_notice",
            vehicle_id=vehicle.vehicle_id,
            license_plate=vehicle.license_plate,
            total_due=total_due,
            total_paid=total_paid,
        )


class CallbackNotifier(Notifier):
    """Fans the notification out to registered callables."""

    def __init__(self):
        self._callbacks: List[Callable[[VehicleRecord, int, int], None]] = []

    def register_callback(self, callback: Callable[[VehicleRecord, int, int], None]) -> None:
        self._callbacks.append(callback)

    def notify_ready(self, vehicle: VehicleRecord, total_due: int, total_paid: int) -> None:
        for callback in self._callbacks:
            callback(vehicle, total_due, total_paid)
