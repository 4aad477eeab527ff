"""Tour booking lifecycle: create, confirm, reschedule, cancel, complete.

Every mutation re-reads the booking, validates the transition through the
BookingStateMachine, and writes back with a conditional UPDATE keyed on
``version``. Whichever writer commits first wins; the other sees an
InvalidStateError instead of a half-applied record. Meeting links are
provisioned before the write and notifications are sent after the commit,
so neither can roll back a committed transition.
"""

import logging
import re
from datetime import date, datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.domain.enums import (
    BookingAuditEvent,
    BookingEventKind,
    BookingStatus,
    Capability,
    FeedbackNextStep,
    MeetingPlatform,
    PropertyInterest,
)
from tour_booking.domain.errors import (
    BookingValidationError,
    InvalidStateError,
    NotFoundError,
)
from tour_booking.domain.models import Booking, BookingEvent, Property, TourFeedback, User
from tour_booking.services.access_policy import SYSTEM_ACTOR_ID, Actor, require_owner_or
from tour_booking.services.booking_state_machine import BookingStateMachine, status_of
from tour_booking.services.clock import as_utc, utcnow
from tour_booking.services.meeting_provisioner import MeetingProvisioner
from tour_booking.services.notification_service import NotificationDispatcher
from tour_booking.services.property_lookup import PropertySummary, get_property_summary

logger = logging.getLogger(__name__)

S = BookingStatus

DEFAULT_DURATION_MINUTES = 30
MAX_DURATION_MINUTES = 480
DEFAULT_LIST_LIMIT = 50

_HHMM = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------


def parse_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        raise BookingValidationError(f"Unknown timezone: {name!r}")


def resolve_local_datetime(day: date | str, hhmm: str, tz_name: Optional[str]) -> datetime:
    """Combine a calendar date and "HH:MM" in *tz_name* into a UTC instant."""
    if isinstance(day, str):
        try:
            day = date.fromisoformat(day)
        except ValueError:
            raise BookingValidationError(f"Invalid date: {day!r} (expected YYYY-MM-DD)")

    match = _HHMM.match(hhmm or "")
    if not match:
        raise BookingValidationError(f"Invalid time: {hhmm!r} (expected HH:MM)")

    tz = parse_timezone(tz_name)
    local = datetime(day.year, day.month, day.day, int(match.group(1)), int(match.group(2)), tzinfo=tz)
    return as_utc(local)


def _validate_duration(duration: Optional[int]) -> int:
    if duration is None:
        return DEFAULT_DURATION_MINUTES
    if not isinstance(duration, int) or isinstance(duration, bool):
        raise BookingValidationError("Duration must be a whole number of minutes")
    if duration <= 0 or duration > MAX_DURATION_MINUTES:
        raise BookingValidationError(
            f"Duration must be between 1 and {MAX_DURATION_MINUTES} minutes"
        )
    return duration


def _validate_platform(platform: MeetingPlatform | str) -> MeetingPlatform:
    try:
        return MeetingPlatform(platform)
    except ValueError:
        allowed = ", ".join(p.value for p in MeetingPlatform)
        raise BookingValidationError(f"Unknown platform {platform!r} (allowed: {allowed})")


def _validate_rating(value: Optional[int], field_name: str, required: bool = False) -> Optional[int]:
    if value is None:
        if required:
            raise BookingValidationError(f"{field_name} is required")
        return None
    if not 1 <= value <= 5:
        raise BookingValidationError(f"{field_name} must be between 1 and 5")
    return value


def meeting_title(prop: Optional[PropertySummary]) -> str:
    return f"Virtual Tour - {prop.title}" if prop else "Virtual Property Tour"


# ---------------------------------------------------------------------------
# Versioned writes
# ---------------------------------------------------------------------------


async def compare_and_swap(
    db: AsyncSession,
    booking: Booking,
    values: dict,
    *conditions,
    now: Optional[datetime] = None,
) -> bool:
    """UPDATE the row only if nobody else has written since *booking* was read."""
    expected_version = booking.version
    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.version == expected_version, *conditions)
        .values(**values, version=expected_version + 1, updated_at=now or utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def audit_event(
    booking_id: str,
    event_type: BookingAuditEvent,
    actor_id: str,
    from_status: Optional[BookingStatus],
    to_status: Optional[BookingStatus],
    data: dict | None = None,
) -> BookingEvent:
    return BookingEvent(
        booking_id=booking_id,
        event_type=event_type.value,
        actor_id=actor_id,
        from_status=from_status.value if from_status else None,
        to_status=to_status.value if to_status else None,
        data=data,
    )


async def mark_reminder_sent(
    db: AsyncSession,
    booking: Booking,
    now: Optional[datetime] = None,
) -> bool:
    """Flip reminder_sent on the row read as *booking*.

    Returns False when a concurrent write (reschedule, cancel, another
    reminder) changed the row first; the flag is then left alone.
    """
    swapped = await compare_and_swap(
        db,
        booking,
        {"reminder_sent": True},
        Booking.reminder_sent.is_(False),
        Booking.status.in_([S.SCHEDULED.value, S.CONFIRMED.value]),
        now=now,
    )
    if not swapped:
        return False
    current = status_of(booking)
    db.add(audit_event(booking.id, BookingAuditEvent.REMINDER_SENT, SYSTEM_ACTOR_ID, current, current))
    await db.commit()
    return True


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BookingService:
    """Owns the Booking state machine and its side effects."""

    def __init__(
        self,
        db: AsyncSession,
        provisioner: MeetingProvisioner,
        dispatcher: NotificationDispatcher,
        state_machine: BookingStateMachine | None = None,
        clock=utcnow,
    ):
        self.db = db
        self.provisioner = provisioner
        self.dispatcher = dispatcher
        self.state_machine = state_machine or BookingStateMachine()
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, booking_id: str) -> Booking:
        """Load the authoritative row, bypassing any stale identity-map copy."""
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")
        return booking

    async def list_for_user(self, user_id: str) -> list[Booking]:
        result = await self.db.execute(
            select(Booking)
            .where(Booking.user_id == user_id)
            .order_by(Booking.scheduled_at.desc())
        )
        return list(result.scalars().all())

    async def list_bookings(
        self,
        expert_id: Optional[str] = None,
        status: Optional[BookingStatus | str] = None,
        from_date: Optional[datetime] = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[Booking]:
        query = select(Booking)
        if expert_id:
            query = query.where(Booking.expert_id == expert_id)
        if status:
            query = query.where(Booking.status == BookingStatus(status).value)
        if from_date:
            query = query.where(Booking.scheduled_at >= as_utc(from_date))
        query = query.order_by(Booking.scheduled_at.asc()).limit(limit or DEFAULT_LIST_LIMIT)
        result = await self.db.execute(query)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def _commit_transition(
        self,
        booking: Booking,
        values: dict,
        events: list[BookingEvent],
        extra_rows: list | None = None,
    ) -> Booking:
        if not await compare_and_swap(self.db, booking, values, now=self.clock()):
            raise InvalidStateError(
                f"Booking {booking.id} was modified concurrently; reload and retry"
            )
        for row in events + (extra_rows or []):
            self.db.add(row)
        await self.db.commit()
        return await self.get(booking.id)

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        property_id: str,
        platform: MeetingPlatform | str,
        scheduled_at: datetime,
        duration: Optional[int] = None,
        timezone: Optional[str] = None,
        attendee_email: Optional[str] = None,
        attendee_name: Optional[str] = None,
        notes: Optional[str] = None,
        lead_id: Optional[str] = None,
        expert_id: Optional[str] = None,
    ) -> Booking:
        """Provision a meeting link, persist a scheduled booking, and announce it."""
        platform = _validate_platform(platform)
        duration = _validate_duration(duration)
        tz_name = timezone or "UTC"
        parse_timezone(tz_name)

        if scheduled_at is None:
            raise BookingValidationError("scheduled_at is required")
        scheduled_at = as_utc(scheduled_at)
        if scheduled_at <= self.clock():
            raise BookingValidationError("Tour time must be in the future")

        prop = await get_property_summary(self.db, property_id)
        if prop is None:
            raise NotFoundError(f"Property {property_id} not found")

        meeting_url = await self.provisioner.provision(
            platform,
            meeting_title(prop),
            scheduled_at,
            duration,
            attendee_email,
            attendee_name,
        )

        booking = Booking(
            user_id=user_id,
            property_id=property_id,
            lead_id=lead_id,
            expert_id=expert_id,
            platform=platform.value,
            scheduled_at=scheduled_at,
            duration=duration,
            timezone=tz_name,
            meeting_url=meeting_url,
            status=S.SCHEDULED.value,
            reminder_sent=False,
            notes=notes,
            user_email=attendee_email,
            user_name=attendee_name,
            version=1,
        )
        self.db.add(booking)
        await self.db.flush()
        self.db.add(
            audit_event(
                booking.id, BookingAuditEvent.CREATED, user_id, None, S.SCHEDULED,
                {"platform": platform.value, "scheduled_at": scheduled_at.isoformat()},
            )
        )
        await self.db.commit()
        booking = await self.get(booking.id)

        logger.info(
            "Booking %s created: user=%s property=%s platform=%s at=%s",
            booking.id, user_id, property_id, platform.value, scheduled_at.isoformat(),
        )
        await self.dispatcher.announce(BookingEventKind.CREATED, booking, {"property": prop})
        return booking

    async def confirm(
        self,
        booking_id: str,
        admin_id: str,
        admin_notes: Optional[str] = None,
    ) -> Booking:
        booking = await self.get(booking_id)
        current = status_of(booking)
        if current != S.SCHEDULED:
            raise InvalidStateError(
                f"Only scheduled bookings can be confirmed (booking is {current.value})"
            )
        self.state_machine.validate_transition(current, S.CONFIRMED)

        now = self.clock()
        values = {
            "status": S.CONFIRMED.value,
            "confirmed_at": now,
            "confirmed_by": admin_id,
        }
        if admin_notes is not None:
            values["admin_notes"] = admin_notes

        booking = await self._commit_transition(
            booking,
            values,
            [audit_event(booking_id, BookingAuditEvent.CONFIRMED, admin_id, current, S.CONFIRMED)],
        )
        logger.info("Booking %s confirmed by %s", booking_id, admin_id)

        prop = await get_property_summary(self.db, booking.property_id)
        await self.dispatcher.announce(BookingEventKind.CONFIRMED, booking, {"property": prop})
        return booking

    async def reschedule(
        self,
        booking_id: str,
        actor: Actor,
        new_date: date | str,
        new_time: str,
        platform: MeetingPlatform | str | None = None,
    ) -> Booking:
        """Move the tour to a new local date/time and request a fresh meeting link."""
        booking = await self.get(booking_id)
        require_owner_or(actor, booking, Capability.RESCHEDULE_ANY_BOOKING, "reschedule")

        current = status_of(booking)
        self.state_machine.validate_transition(current, S.RESCHEDULED)
        self.state_machine.validate_transition(S.RESCHEDULED, S.SCHEDULED)

        new_at = resolve_local_datetime(new_date, new_time, booking.timezone)
        if new_at <= self.clock():
            raise BookingValidationError("New tour time must be in the future")

        new_platform = _validate_platform(platform or booking.platform)
        old_at = as_utc(booking.scheduled_at)
        prop = await get_property_summary(self.db, booking.property_id)

        # The old link is tied to the old slot; always ask for a new one.
        meeting_url = await self.provisioner.provision(
            new_platform,
            meeting_title(prop),
            new_at,
            booking.duration or DEFAULT_DURATION_MINUTES,
            booking.user_email,
            booking.user_name,
        )

        change = {
            "old_scheduled_at": old_at.isoformat(),
            "new_scheduled_at": new_at.isoformat(),
            "old_platform": booking.platform,
            "new_platform": new_platform.value,
        }
        booking = await self._commit_transition(
            booking,
            {
                "scheduled_at": new_at,
                "platform": new_platform.value,
                "meeting_url": meeting_url,
                "status": S.SCHEDULED.value,
                "reminder_sent": False,
                "confirmed_at": None,
                "confirmed_by": None,
            },
            [
                audit_event(booking_id, BookingAuditEvent.RESCHEDULE_REQUESTED, actor.user_id, current, S.RESCHEDULED),
                audit_event(booking_id, BookingAuditEvent.RESCHEDULED, actor.user_id, S.RESCHEDULED, S.SCHEDULED, change),
            ],
        )
        logger.info(
            "Booking %s rescheduled by %s: %s -> %s",
            booking_id, actor.user_id, change["old_scheduled_at"], change["new_scheduled_at"],
        )

        await self.dispatcher.announce(
            BookingEventKind.RESCHEDULED,
            booking,
            {"property": prop, "old_scheduled_at": old_at},
        )
        return booking

    async def cancel(self, booking_id: str, actor: Actor) -> Booking:
        """Cancel a booking. Cancelling an already-cancelled booking is a no-op."""
        booking = await self.get(booking_id)
        require_owner_or(actor, booking, Capability.CANCEL_ANY_BOOKING, "cancel")

        current = status_of(booking)
        if current == S.CANCELLED:
            logger.info("Booking %s already cancelled; nothing to do", booking_id)
            return booking
        self.state_machine.validate_transition(current, S.CANCELLED)

        now = self.clock()
        booking = await self._commit_transition(
            booking,
            {"status": S.CANCELLED.value},
            [audit_event(booking_id, BookingAuditEvent.CANCELLED, actor.user_id, current, S.CANCELLED)],
        )
        logger.info("Booking %s cancelled by %s", booking_id, actor.user_id)

        prop = await get_property_summary(self.db, booking.property_id)
        await self.dispatcher.announce(
            BookingEventKind.CANCELLED, booking, {"property": prop, "cancelled_at": now}
        )
        return booking

    async def complete(
        self,
        booking_id: str,
        actor: Optional[Actor] = None,
        extra_rows: list | None = None,
    ) -> Booking:
        """Mark a scheduled or confirmed tour as held. actor=None means the system."""
        booking = await self.get(booking_id)
        if actor is not None:
            require_owner_or(actor, booking, Capability.COMPLETE_ANY_BOOKING, "complete")

        current = status_of(booking)
        self.state_machine.validate_transition(current, S.COMPLETED)

        actor_id = actor.user_id if actor else SYSTEM_ACTOR_ID
        booking = await self._commit_transition(
            booking,
            {"status": S.COMPLETED.value},
            [audit_event(booking_id, BookingAuditEvent.COMPLETED, actor_id, current, S.COMPLETED)],
            extra_rows=extra_rows,
        )
        logger.info("Booking %s completed (actor=%s)", booking_id, actor_id)
        return booking

    async def record_feedback(
        self,
        booking_id: str,
        actor: Actor,
        rating: int,
        tour_quality: Optional[int] = None,
        property_interest: Optional[PropertyInterest | str] = None,
        would_recommend: Optional[bool] = None,
        comments: Optional[str] = None,
        next_steps: Optional[FeedbackNextStep | str] = None,
    ) -> TourFeedback:
        """Store post-tour feedback and complete the booking in the same commit."""
        _validate_rating(rating, "rating", required=True)
        _validate_rating(tour_quality, "tour_quality")
        try:
            interest = PropertyInterest(property_interest).value if property_interest else None
            step = FeedbackNextStep(next_steps).value if next_steps else None
        except ValueError as exc:
            raise BookingValidationError(str(exc))

        booking = await self.get(booking_id)
        feedback = TourFeedback(
            booking_id=booking_id,
            user_id=actor.user_id,
            property_id=booking.property_id,
            rating=rating,
            tour_quality=tour_quality,
            property_interest=interest,
            would_recommend=would_recommend,
            comments=comments,
            next_steps=step,
        )
        await self.complete(booking_id, actor, extra_rows=[feedback])
        return feedback

    async def list_feedback_for_property(self, property_id: str) -> list[TourFeedback]:
        result = await self.db.execute(
            select(TourFeedback)
            .where(TourFeedback.property_id == property_id)
            .order_by(TourFeedback.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_all_feedback(self) -> list[tuple[TourFeedback, Optional[str], Optional[str], Optional[str]]]:
        """Every feedback row, newest first, with property title and author name and email.

        Outer joins keep feedback whose property or user has since been removed.
        """
        result = await self.db.execute(
            select(TourFeedback, Property.title, User.name, User.email)
            .select_from(TourFeedback)
            .outerjoin(Property, TourFeedback.property_id == Property.id)
            .outerjoin(User, TourFeedback.user_id == User.id)
            .order_by(TourFeedback.created_at.desc())
        )
        return [tuple(row) for row in result.all()]

    async def property_rating(self, property_id: str) -> Optional[dict]:
        """Average rating and count for a property, or None if it has no feedback."""
        result = await self.db.execute(
            select(func.avg(TourFeedback.rating), func.count(TourFeedback.id))
            .where(TourFeedback.property_id == property_id)
        )
        average, count = result.one()
        if not count:
            return None
        return {"average": float(average), "count": count}

    # ------------------------------------------------------------------
    # Reminder bookkeeping (shared with the scheduler)
    # ------------------------------------------------------------------

    async def mark_reminder_sent(self, booking: Booking) -> bool:
        return await mark_reminder_sent(self.db, booking, now=self.clock())
