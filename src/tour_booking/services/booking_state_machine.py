"""Booking state machine: validates tour booking status transitions.

scheduled -> confirmed -> completed
scheduled | confirmed -> rescheduled -> scheduled
any non-terminal -> cancelled
"""

from tour_booking.domain.enums import BookingStatus
from tour_booking.domain.errors import InvalidStateError


class InvalidTransitionError(InvalidStateError):
    """Raised when a booking state transition is not allowed."""

    def __init__(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
        reason: str,
    ):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


S = BookingStatus

TRANSITION_MAP: dict[BookingStatus, set[BookingStatus]] = {
    S.SCHEDULED: {S.CONFIRMED, S.RESCHEDULED, S.COMPLETED, S.CANCELLED},
    S.CONFIRMED: {S.RESCHEDULED, S.COMPLETED, S.CANCELLED},
    S.RESCHEDULED: {S.SCHEDULED, S.CANCELLED},
}

TERMINAL_STATES: set[BookingStatus] = {S.COMPLETED, S.CANCELLED}

# Bookings in these states occupy the agent's calendar
ACTIVE_STATES: set[BookingStatus] = {S.SCHEDULED, S.CONFIRMED}


def status_of(booking) -> BookingStatus:
    """Return the booking's status as an enum, whatever the column holds."""
    status = booking.status
    if isinstance(status, BookingStatus):
        return status
    return BookingStatus(status)


class BookingStateMachine:
    """Validates booking state transitions."""

    def validate_transition(
        self,
        current_status: BookingStatus,
        target_status: BookingStatus,
    ) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        if current_status in TERMINAL_STATES:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"{current_status.value} is terminal",
            )

        allowed_targets = TRANSITION_MAP.get(current_status, set())
        if target_status not in allowed_targets:
            raise InvalidTransitionError(
                current_status,
                target_status,
                f"Transition from {current_status.value} to {target_status.value} is not allowed",
            )
        return True

    def get_allowed_transitions(self, current_status: BookingStatus) -> list[BookingStatus]:
        """Return valid next states from the current status, in declaration order."""
        allowed = TRANSITION_MAP.get(current_status, set())
        return [s for s in BookingStatus if s in allowed]

    def is_terminal(self, status: BookingStatus) -> bool:
        return status in TERMINAL_STATES
