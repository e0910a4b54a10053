"""
Tests for the vehicle status state machine
"""

import pytest

from impound_rail.core.errors import InvalidTransition, ValidationError
from impound_rail.core.status import TRANSITIONS, VehicleStatus, can_transition, check_transition

LEGAL = {
    ("impounded", "ready_for_release"),
    ("impounded", "claimed"),
    ("ready_for_release", "released"),
    ("claimed", "released"),
}


class TestTransitions:
    """Tests for the transition table."""

    @pytest.mark.parametrize("current", list(VehicleStatus))
    @pytest.mark.parametrize("target", list(VehicleStatus))
    def test_table(self, current, target):
        expected = (current.value, target.value) in LEGAL
        assert can_transition(current, target) is expected

    def test_released_is_terminal(self):
        assert TRANSITIONS[VehicleStatus.RELEASED] == frozenset()

    def test_check_returns_parsed_target(self):
        assert check_transition("impounded", "CLAIMED") is VehicleStatus.CLAIMED

    def test_backwards_move_rejected(self):
        with pytest.raises(InvalidTransition) as exc:
            check_transition(VehicleStatus.READY_FOR_RELEASE, VehicleStatus.IMPOUNDED)

        assert exc.value.current is VehicleStatus.READY_FOR_RELEASE
        assert "ready_for_release -> impounded" in str(exc.value)

    def test_invalid_transition_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            check_transition("released", "claimed")

    def test_unknown_status(self):
        with pytest.raises(ValidationError) as exc:
            VehicleStatus.parse("towed")
        assert exc.value.field == "status"
