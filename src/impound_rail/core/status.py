"""
Vehicle Status State Machine

    impounded ──> ready_for_release ──> released
        │                                  ▲
        └───────> claimed ─────────────────┘

Only the edges in TRANSITIONS are legal. Nothing in this package moves a
vehicle backwards.
"""

from enum import Enum
from typing import Dict, FrozenSet, Union

from .errors import InvalidTransition, ValidationError


class VehicleStatus(Enum):
    IMPOUNDED = "impounded"
    READY_FOR_RELEASE = "ready_for_release"
    CLAIMED = "claimed"
    RELEASED = "released"

    @classmethod
    def parse(cls, value: Union[str, "VehicleStatus"]) -> "VehicleStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValidationError(f"Unknown vehicle status: {value!r}", field="status")


TRANSITIONS: Dict[VehicleStatus, FrozenSet[VehicleStatus]] = {
    VehicleStatus.IMPOUNDED: frozenset({VehicleStatus.READY_FOR_RELEASE, VehicleStatus.CLAIMED}),
    VehicleStatus.READY_FOR_RELEASE: frozenset({VehicleStatus.RELEASED}),
    VehicleStatus.CLAIMED: frozenset({VehicleStatus.RELEASED}),
    VehicleStatus.RELEASED: frozenset(),
}


def can_transition(current: VehicleStatus, target: VehicleStatus) -> bool:
    return target in TRANSITIONS[current]


def check_transition(
    current: Union[str, VehicleStatus],
    target: Union[str, VehicleStatus],
) -> VehicleStatus:
    """Validate a transition and return the parsed target status."""
    current = VehicleStatus.parse(current)
    target = VehicleStatus.parse(target)
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return target
