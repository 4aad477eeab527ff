"""Tour reminders, sent once, roughly a day ahead.

Each tick looks at bookings whose start falls in the half-open band
``[now + lead, now + lead + band)``, widened back to the end of the
previous band when a tick runs late. A reminder is dispatched first and the
booking is marked only after the sink accepts it, so a failed send is
retried on the next tick while the booking is still in the band. The mark
is a versioned conditional update; a reschedule or cancel that lands
between dispatch and mark wins and the flag is left alone.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.domain.enums import BookingEventKind, BookingStatus
from tour_booking.domain.errors import InvalidStateError, NotFoundError
from tour_booking.domain.models import Booking
from tour_booking.services.booking_service import mark_reminder_sent
from tour_booking.services.booking_state_machine import TERMINAL_STATES, status_of
from tour_booking.services.clock import as_utc, utcnow
from tour_booking.services.notification_service import NotificationDispatcher
from tour_booking.services.property_lookup import get_property_summary

logger = logging.getLogger(__name__)

SENT = "sent"
FAILED = "failed"
SKIPPED = "skipped"
SUPERSEDED = "superseded"


@dataclass
class SchedulerState:
    """What the previous tick looked at. Owned by whoever drives the ticks."""

    last_run_at: Optional[datetime] = None
    last_window_start: Optional[datetime] = None
    last_window_end: Optional[datetime] = None


class ReminderScheduler:
    def __init__(
        self,
        db: AsyncSession,
        dispatcher: NotificationDispatcher,
        state: SchedulerState | None = None,
        lead: timedelta = timedelta(hours=24),
        band: timedelta = timedelta(hours=1),
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.state = state if state is not None else SchedulerState()
        self.lead = lead
        self.band = band

    def window(self, now: datetime) -> tuple[datetime, datetime]:
        """The band to scan at *now*.

        A late tick starts where the previous band ended, so consecutive
        bands are contiguous. The start never goes before *now*.
        """
        now = as_utc(now)
        start = now + self.lead
        previous_end = self.state.last_window_end
        if previous_end is not None and previous_end < start:
            start = max(previous_end, now)
        return start, now + self.lead + self.band

    async def tick(self, now: datetime | None = None) -> dict:
        """Send due reminders. Returns per-outcome counts for the tick."""
        now = as_utc(now) if now else utcnow()
        window_start, window_end = self.window(now)

        result = await self.db.execute(
            select(Booking)
            .where(
                Booking.status == BookingStatus.SCHEDULED.value,
                Booking.reminder_sent.is_(False),
                Booking.scheduled_at >= window_start,
                Booking.scheduled_at < window_end,
            )
            .order_by(Booking.scheduled_at)
        )
        candidates = list(result.scalars().all())

        summary = {
            "candidates": len(candidates),
            SENT: 0,
            FAILED: 0,
            SKIPPED: 0,
            SUPERSEDED: 0,
            "missed": 0,
        }
        for booking in candidates:
            outcome = await self._remind(booking, now)
            summary[outcome] += 1

        summary["missed"] = await self._count_missed(window_start)

        self.state.last_run_at = now
        self.state.last_window_start = window_start
        self.state.last_window_end = window_end

        if candidates or summary["missed"]:
            logger.info(
                "Reminder tick %s..%s: %s",
                window_start.isoformat(), window_end.isoformat(), summary,
            )
        return summary

    async def send_immediate_reminder(self, booking_id: str) -> bool:
        """Remind one booking now, outside the band. False if already reminded or not sent."""
        result = await self.db.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        booking = result.scalar_one_or_none()
        if booking is None:
            raise NotFoundError(f"Booking {booking_id} not found")

        current = status_of(booking)
        if current in TERMINAL_STATES:
            raise InvalidStateError(f"Cannot remind a {current.value} booking")
        if booking.reminder_sent:
            logger.info("Booking %s already reminded; skipping immediate reminder", booking_id)
            return False

        return await self._remind(booking, utcnow()) == SENT

    async def _remind(self, booking: Booking, now: datetime) -> str:
        prop = await get_property_summary(self.db, booking.property_id)
        if prop is None:
            logger.warning(
                "Skipping reminder for booking %s: property %s not found",
                booking.id, booking.property_id,
            )
            return SKIPPED

        delivered = await self.dispatcher.announce(
            BookingEventKind.REMINDER, booking, {"property": prop}
        )
        if not delivered:
            logger.warning("Reminder for booking %s not delivered; will retry", booking.id)
            return FAILED

        if not await mark_reminder_sent(self.db, booking, now=now):
            logger.info(
                "Booking %s changed while its reminder was in flight; flag not set",
                booking.id,
            )
            return SUPERSEDED

        logger.info("Reminder sent for booking %s", booking.id)
        return SENT

    async def _count_missed(self, window_start: datetime) -> int:
        """Log bookings that slid out of the band since the last tick without a reminder."""
        previous_start = self.state.last_window_start
        if previous_start is None or previous_start >= window_start:
            return 0

        result = await self.db.execute(
            select(Booking).where(
                Booking.status == BookingStatus.SCHEDULED.value,
                Booking.reminder_sent.is_(False),
                Booking.scheduled_at >= previous_start,
                Booking.scheduled_at < window_start,
            )
        )
        missed = list(result.scalars().all())
        for booking in missed:
            logger.warning(
                "Reminder permanently missed for booking %s (scheduled_at=%s)",
                booking.id, as_utc(booking.scheduled_at).isoformat(),
            )
        return len(missed)
