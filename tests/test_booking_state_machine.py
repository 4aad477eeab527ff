"""Unit tests for the BookingStateMachine."""

from types import SimpleNamespace

import pytest

from tour_booking.domain.enums import BookingStatus
from tour_booking.domain.errors import InvalidStateError
from tour_booking.services.booking_state_machine import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    TRANSITION_MAP,
    BookingStateMachine,
    InvalidTransitionError,
    status_of,
)

S = BookingStatus


@pytest.fixture
def sm():
    return BookingStateMachine()


class TestValidTransitions:
    """Every transition defined in TRANSITION_MAP should succeed."""

    @pytest.mark.parametrize(
        "from_status,to_status",
        [(from_s, to_s) for from_s, targets in TRANSITION_MAP.items() for to_s in targets],
    )
    def test_all_valid_transitions(self, sm, from_status, to_status):
        assert sm.validate_transition(from_status, to_status) is True

    def test_reschedule_round_trip(self, sm):
        assert sm.validate_transition(S.CONFIRMED, S.RESCHEDULED)
        assert sm.validate_transition(S.RESCHEDULED, S.SCHEDULED)


class TestInvalidTransitions:
    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    @pytest.mark.parametrize("target", list(BookingStatus))
    def test_terminal_states_have_no_exits(self, sm, terminal, target):
        with pytest.raises(InvalidTransitionError) as exc_info:
            sm.validate_transition(terminal, target)
        assert "terminal" in exc_info.value.reason

    def test_confirmed_cannot_be_confirmed_again(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.CONFIRMED, S.CONFIRMED)

    def test_rescheduled_cannot_complete_directly(self, sm):
        with pytest.raises(InvalidTransitionError):
            sm.validate_transition(S.RESCHEDULED, S.COMPLETED)

    def test_error_is_an_invalid_state_error(self, sm):
        with pytest.raises(InvalidStateError) as exc_info:
            sm.validate_transition(S.COMPLETED, S.SCHEDULED)
        assert exc_info.value.status_code == 409
        assert exc_info.value.current_status == S.COMPLETED
        assert exc_info.value.target_status == S.SCHEDULED


class TestHelpers:
    def test_allowed_transitions_from_scheduled(self, sm):
        assert sm.get_allowed_transitions(S.SCHEDULED) == [
            S.CONFIRMED,
            S.COMPLETED,
            S.CANCELLED,
            S.RESCHEDULED,
        ]

    def test_allowed_transitions_from_terminal_is_empty(self, sm):
        assert sm.get_allowed_transitions(S.CANCELLED) == []

    def test_is_terminal(self, sm):
        assert sm.is_terminal(S.COMPLETED)
        assert sm.is_terminal(S.CANCELLED)
        assert not sm.is_terminal(S.SCHEDULED)

    def test_active_states(self):
        assert ACTIVE_STATES == {S.SCHEDULED, S.CONFIRMED}

    def test_status_of_accepts_strings_and_enums(self):
        assert status_of(SimpleNamespace(status="confirmed")) == S.CONFIRMED
        assert status_of(SimpleNamespace(status=S.CANCELLED)) == S.CANCELLED
