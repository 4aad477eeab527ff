"""Domain enumerations for tour bookings.

All enums use the (str, Enum) pattern to ensure JSON serialization compatibility.
"""

from enum import Enum


class MeetingPlatform(str, Enum):
    """Conferencing platform a virtual tour is held on."""

    GOOGLE_MEET = "GoogleMeet"
    TEAMS = "Teams"
    ZOOM = "Zoom"
    PHONE = "Phone"


class BookingStatus(str, Enum):
    """Lifecycle status of a tour booking."""

    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"


class BookingEventKind(str, Enum):
    """Lifecycle events announced to the notification sink."""

    CREATED = "created"
    CONFIRMED = "confirmed"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    REMINDER = "reminder"


class BookingAuditEvent(str, Enum):
    """Event types written to the booking_events audit trail."""

    CREATED = "created"
    CONFIRMED = "confirmed"
    RESCHEDULE_REQUESTED = "reschedule_requested"
    RESCHEDULED = "rescheduled"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    REMINDER_SENT = "reminder_sent"


class UserRole(str, Enum):
    """Role carried on the user record and in the JWT."""

    VISITOR = "visitor"
    AGENT = "agent"
    ADMIN = "admin"


class Capability(str, Enum):
    """Named permissions an actor may hold beyond owning a booking."""

    CONFIRM_BOOKING = "confirm_booking"
    CANCEL_ANY_BOOKING = "cancel_any_booking"
    RESCHEDULE_ANY_BOOKING = "reschedule_any_booking"
    COMPLETE_ANY_BOOKING = "complete_any_booking"
    LIST_ALL_BOOKINGS = "list_all_bookings"
    LIST_ALL_FEEDBACK = "list_all_feedback"


class PropertyInterest(str, Enum):
    """Interest level captured in post-tour feedback."""

    VERY_INTERESTED = "very_interested"
    INTERESTED = "interested"
    NEUTRAL = "neutral"
    NOT_INTERESTED = "not_interested"


class FeedbackNextStep(str, Enum):
    """What the visitor wants to do after the tour."""

    SCHEDULE_VISIT = "schedule_visit"
    REQUEST_INFO = "request_info"
    MAKE_OFFER = "make_offer"
    NOT_READY = "not_ready"
    OTHER = "other"
