"""
Tariff Table

Maps each vehicle category to its one-time removal fee and per-day storage rate.

Tariffs are published as immutable, versioned snapshots. A fee calculation
resolves exactly one snapshot up front, so a concurrent `publish()` can never be
observed half-way through a calculation.
"""

import json
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Lock
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union
import structlog

from .errors import ValidationError

logger = structlog.get_logger()


class VehicleCategory(Enum):
    """Closed set of vehicle categories recognised by the municipal tariff."""
    MOTORCYCLE = "MOTORCYCLE"
    TRICYCLE = "TRICYCLE"
    SMALL_VEHICLE = "SMALL_VEHICLE"
    MEDIUM_VEHICLE = "MEDIUM_VEHICLE"
    LARGE_VEHICLE = "LARGE_VEHICLE"
    SMALL_TRUCK = "SMALL_TRUCK"
    MEDIUM_TRUCK = "MEDIUM_TRUCK"
    LARGE_TRUCK = "LARGE_TRUCK"

    @property
    def label(self) -> str:
        return CATEGORY_LABELS[self]

    @classmethod
    def parse(cls, value: Union[str, "VehicleCategory"]) -> Optional["VehicleCategory"]:
        """
        Resolve a category from its code or display label.

        Returns None for a well-formed but unknown category; raises
        ValidationError for empty or non-string input.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Invalid vehicle category: {value!r}", field="category")

        key = value.strip()
        try:
            return cls[key.upper()]
        except KeyError:
            pass
        for category, label in CATEGORY_LABELS.items():
            if label.lower() == key.lower():
                return category
        return None


CATEGORY_LABELS = {
    VehicleCategory.MOTORCYCLE: "Deux-roues motorisés",
    VehicleCategory.TRICYCLE: "Tricycles",
    VehicleCategory.SMALL_VEHICLE: "Véhicule de 4 à 12 places",
    VehicleCategory.MEDIUM_VEHICLE: "Véhicule de 13 à 30 places",
    VehicleCategory.LARGE_VEHICLE: "Véhicule à partir de 31 places",
    VehicleCategory.SMALL_TRUCK: "Camion inférieur à 5 tonnes",
    VehicleCategory.MEDIUM_TRUCK: "Camion de 5 à 10 tonnes",
    VehicleCategory.LARGE_TRUCK: "Camion supérieur à 10 tonnes",
}


@dataclass(frozen=True)
class Tariff:
    """Fees for one category, in whole currency units."""
    removal_fee: int
    daily_rate: int

    def __post_init__(self):
        for name in ("removal_fee", "daily_rate"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer", field=name)

    def to_dict(self) -> Dict[str, int]:
        return {"removal_fee": self.removal_fee, "daily_rate": self.daily_rate}


def _tariff_from(values: Any, where: str) -> Tariff:
    """Read a Tariff from JSON. Fractional or missing fees are rejected, never rounded."""
    if not isinstance(values, dict):
        raise ValidationError(f"{where} must be an object", field=where)
    fees = {}
    for name in ("removal_fee", "daily_rate"):
        if name not in values:
            raise ValidationError(f"{where} is missing {name}", field=f"{where}.{name}")
        value = values[name]
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(
                f"{where}.{name} must be a non-negative whole number: {value!r}", field=f"{where}.{name}"
            )
        fees[name] = value
    return Tariff(**fees)


DEFAULT_TARIFF = Tariff(removal_fee=30000, daily_rate=5000)

DEFAULT_RATES = {
    VehicleCategory.MOTORCYCLE: Tariff(removal_fee=5000, daily_rate=2000),
    VehicleCategory.TRICYCLE: Tariff(removal_fee=10000, daily_rate=3000),
    VehicleCategory.SMALL_VEHICLE: Tariff(removal_fee=30000, daily_rate=5000),
    VehicleCategory.MEDIUM_VEHICLE: Tariff(removal_fee=50000, daily_rate=10000),
    VehicleCategory.LARGE_VEHICLE: Tariff(removal_fee=80000, daily_rate=15000),
    VehicleCategory.SMALL_TRUCK: Tariff(removal_fee=50000, daily_rate=10000),
    VehicleCategory.MEDIUM_TRUCK: Tariff(removal_fee=120000, daily_rate=15000),
    VehicleCategory.LARGE_TRUCK: Tariff(removal_fee=150000, daily_rate=20000),
}


@dataclass(frozen=True)
class TariffTable:
    """An immutable, versioned tariff snapshot."""
    version: str
    rates: Mapping[VehicleCategory, Tariff]
    default: Tariff = DEFAULT_TARIFF

    def __post_init__(self):
        # Freeze the mapping so a published snapshot can't drift.
        object.__setattr__(self, "rates", MappingProxyType(dict(self.rates)))

    def resolve(self, category: Union[str, VehicleCategory]) -> Tariff:
        """Tariff for a category; unknown categories get the default tariff."""
        parsed = VehicleCategory.parse(category)
        if parsed is None:
            logger.warning("tariff_category_unknown", category=category, version=self.version)
            return self.default
        return self.rates.get(parsed, self.default)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "default": self.default.to_dict(),
            "categories": {
                category.value: {**tariff.to_dict(), "label": category.label}
                for category, tariff in self.rates.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TariffTable":
        """
        Build a snapshot from its JSON form.

        Expected shape: {"version": "...", "default": {...}, "categories":
        {"SMALL_VEHICLE": {"removal_fee": 30000, "daily_rate": 5000}, ...}}
        """
        version = data.get("version")
        if not isinstance(version, str) or not version:
            raise ValidationError("Tariff table requires a version", field="version")

        rates = {}
        for code, values in (data.get("categories") or {}).items():
            category = VehicleCategory.parse(code)
            if category is None:
                raise ValidationError(f"Unknown category in tariff table: {code}", field="categories")
            rates[category] = _tariff_from(values, f"categories.{code}")

        default_data = data.get("default")
        default = _tariff_from(default_data, "default") if default_data else DEFAULT_TARIFF
        return cls(version=version, rates=rates, default=default)

    @classmethod
    def load(cls, path: Union[str, Path]) -> "TariffTable":
        """Load a snapshot from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))


DEFAULT_TARIFF_TABLE = TariffTable(version="cotonou-2024.1", rates=DEFAULT_RATES)


class TariffRegistry:
    """
    Holds the currently published tariff snapshot.

    Readers take a snapshot with `current()` and use only that object for the
    rest of their calculation.
    """

    def __init__(self, initial: Optional[TariffTable] = None):
        self._current = initial or DEFAULT_TARIFF_TABLE
        self._lock = Lock()
        self._history = [self._current.version]

    def current(self) -> TariffTable:
        return self._current

    def publish(self, table: TariffTable) -> TariffTable:
        """Swap in a new snapshot. Returns the one it replaced."""
        with self._lock:
            if table.version in self._history:
                raise ValidationError(
                    f"Tariff version already published: {table.version}", field="version"
                )
            previous = self._current
            self._current = table
            self._history.append(table.version)

        logger.info("tariff_published", old_version=previous.version, new_version=table.version)
        return previous

    @property
    def history(self) -> list:
        return list(self._history)
