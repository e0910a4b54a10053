"""
IMPOUND RAIL - Core Module

Pure domain logic: tariffs, fee computation, the vehicle status state machine
and the error taxonomy. Nothing here touches storage.
"""

from .errors import (
    ImpoundRailError,
    ValidationError,
    InvalidTransition,
    NotFoundError,
    DuplicateReference,
    RenderError,
    DownstreamNotifyError,
)
from .tariff import VehicleCategory, Tariff, TariffTable, TariffRegistry, DEFAULT_TARIFF_TABLE
from .fees import FeeBreakdown, compute_fee, days_elapsed, parse_timestamp
from .status import VehicleStatus, TRANSITIONS, can_transition, check_transition

__all__ = [
    "ImpoundRailError",
    "ValidationError",
    "InvalidTransition",
    "NotFoundError",
    "DuplicateReference",
    "RenderError",
    "DownstreamNotifyError",
    "VehicleCategory",
    "Tariff",
    "TariffTable",
    "TariffRegistry",
    "DEFAULT_TARIFF_TABLE",
    "FeeBreakdown",
    "compute_fee",
    "days_elapsed",
    "parse_timestamp",
    "VehicleStatus",
    "TRANSITIONS",
    "can_transition",
    "check_transition",
]
