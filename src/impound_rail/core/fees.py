"""
Fee Calculator

    days_elapsed = max(ceil((evaluated_at - impounded_at) / 1 day), 1)
    total_due    = removal_fee + daily_rate * days_elapsed

The staff UI, the public lookup, the reconciliation engine and the receipt
issuer all call `compute_fee`. Given the same inputs and tariff snapshot they
must agree exactly, so the day count uses integer microsecond arithmetic rather
than floating-point division.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union

from .errors import ValidationError
from .tariff import TariffTable, VehicleCategory, DEFAULT_TARIFF_TABLE

_DAY = timedelta(days=1)


@dataclass(frozen=True)
class FeeBreakdown:
    """Amount due for one vehicle at one evaluation instant."""
    category: str
    days_elapsed: int
    daily_rate: int
    removal_fee: int
    storage_fee: int
    total_due: int
    tariff_version: str
    evaluated_at: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category,
            "days_elapsed": self.days_elapsed,
            "daily_rate": self.daily_rate,
            "removal_fee": self.removal_fee,
            "storage_fee": self.storage_fee,
            "total_due": self.total_due,
            "tariff_version": self.tariff_version,
            "evaluated_at": self.evaluated_at,
        }


def parse_timestamp(value: Union[str, datetime], field: str = "timestamp") -> datetime:
    """
    Normalize a timestamp to an aware UTC datetime.

    Naive datetimes are taken as UTC. ISO-8601 strings are accepted.
    """
    if isinstance(value, str):
        try:
            value = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            raise ValidationError(f"Malformed timestamp: {value!r}", field=field)
    if not isinstance(value, datetime):
        raise ValidationError(f"Malformed timestamp: {value!r}", field=field)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def days_elapsed(impounded_at: datetime, evaluated_at: datetime) -> int:
    """Started days in storage, never less than one."""
    elapsed = evaluated_at - impounded_at
    # Ceiling division on exact timedelta values.
    days = -(-elapsed // _DAY)
    return max(days, 1)


def compute_fee(
    category: Union[str, VehicleCategory],
    impounded_at: Union[str, datetime],
    evaluated_at: Optional[Union[str, datetime]] = None,
    tariffs: Optional[TariffTable] = None,
) -> FeeBreakdown:
    """
    Compute the amount due for an impounded vehicle.

    Args:
        category: Vehicle category code or label. Unknown categories resolve to
            the table's default tariff.
        impounded_at: When the vehicle entered the pound.
        evaluated_at: Evaluation instant, defaults to now.
        tariffs: Tariff snapshot to use. Resolved once; defaults to the
            built-in table.
    """
    table = tariffs or DEFAULT_TARIFF_TABLE
    start = parse_timestamp(impounded_at, field="impounded_at")
    end = parse_timestamp(
        evaluated_at if evaluated_at is not None else datetime.now(timezone.utc),
        field="evaluated_at",
    )

    tariff = table.resolve(category)
    parsed = VehicleCategory.parse(category)
    days = days_elapsed(start, end)
    storage_fee = tariff.daily_rate * days

    return FeeBreakdown(
        category=parsed.value if parsed else str(category).strip(),
        days_elapsed=days,
        daily_rate=tariff.daily_rate,
        removal_fee=tariff.removal_fee,
        storage_fee=storage_fee,
        total_due=tariff.removal_fee + storage_fee,
        tariff_version=table.version,
        evaluated_at=end.isoformat(),
    )
