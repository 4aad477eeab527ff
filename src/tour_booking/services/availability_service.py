"""Agent availability lookup for tour scheduling.

Returns the agent's active weekly windows for a date together with the
bookings that already occupy that date. Slot enumeration is left to the
presentation layer.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.domain.models import AvailabilityWindow, Booking
from tour_booking.services.booking_state_machine import ACTIVE_STATES

logger = logging.getLogger(__name__)


@dataclass
class AvailabilityResult:
    windows: list[AvailabilityWindow] = field(default_factory=list)
    conflicting_bookings: list[Booking] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.windows


def day_of_week(day: date) -> int:
    """0 = Sunday ... 6 = Saturday."""
    return (day.weekday() + 1) % 7


def _zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown availability timezone %r, using UTC", name)
        return ZoneInfo("UTC")


def day_bounds_utc(day: date, tz_name: str | None) -> tuple[datetime, datetime]:
    """Return [start, end) of *day* in *tz_name*, expressed in UTC."""
    tz = _zone(tz_name)
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


class AvailabilityCalculator:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def available_slots(self, agent_id: str, day: date) -> AvailabilityResult:
        """Active windows for *agent_id* on *day*, plus bookings that conflict with them."""
        result = await self.db.execute(
            select(AvailabilityWindow)
            .where(
                AvailabilityWindow.agent_id == agent_id,
                AvailabilityWindow.day_of_week == day_of_week(day),
                AvailabilityWindow.is_active.is_(True),
            )
            .order_by(AvailabilityWindow.start_time)
        )
        windows = list(result.scalars().all())
        if not windows:
            return AvailabilityResult()

        # Windows for one agent share the agent's timezone
        start, end = day_bounds_utc(day, windows[0].timezone)
        bookings_result = await self.db.execute(
            select(Booking)
            .where(
                Booking.expert_id == agent_id,
                Booking.scheduled_at >= start,
                Booking.scheduled_at < end,
                Booking.status.in_([s.value for s in ACTIVE_STATES]),
            )
            .order_by(Booking.scheduled_at)
        )
        return AvailabilityResult(
            windows=windows,
            conflicting_bookings=list(bookings_result.scalars().all()),
        )
