"""Error taxonomy for booking operations.

NotFound, Forbidden, InvalidState and validation errors are surfaced to the
caller as the result of the operation. ExternalDegradedError and
NotificationFailure are raised inside collaborators and absorbed before they
reach a booking operation.
"""


class BookingError(Exception):
    """Base class for errors surfaced to callers of the booking engine."""

    status_code = 400

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(BookingError):
    """Booking, agent, or property does not exist."""

    status_code = 404


class ForbiddenError(BookingError):
    """Actor lacks ownership or capability for the requested transition."""

    status_code = 403


class InvalidStateError(BookingError):
    """Transition is not legal from the current status, or a concurrent write won."""

    status_code = 409


class BookingValidationError(BookingError):
    """Malformed date, time, timezone, or duration input."""

    status_code = 422


class ExternalDegradedError(Exception):
    """A conferencing provider call failed; the caller falls back to a placeholder."""

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} provisioning failed: {reason}")


class NotificationFailure(Exception):
    """The notification sink rejected or timed out on a message."""
