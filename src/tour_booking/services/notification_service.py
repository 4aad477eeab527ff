"""Booking lifecycle notifications.

Formats created / confirmed / rescheduled / cancelled / reminder events into
(title, content) pairs and hands them to the notification sink. A failed or
slow send is logged and reported as False; it never fails the booking
operation that triggered it.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Any, Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tour_booking.domain.enums import BookingEventKind
from tour_booking.domain.errors import NotificationFailure
from tour_booking.services.clock import as_utc, utcnow

logger = logging.getLogger(__name__)

_FOOTER = "---\n*This is an automated notification from the 3B Solution booking system.*"


class NotificationSink(Protocol):
    async def send(self, title: str, content: str) -> bool:
        ...


def _local(value: datetime, tz_name: str | None) -> datetime:
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    return as_utc(value).astimezone(tz)


def format_date(value: datetime, tz_name: str | None, with_year: bool = True) -> str:
    local = _local(value, tz_name)
    if with_year:
        return f"{local:%A, %B} {local.day}, {local.year}"
    return f"{local:%A, %B} {local.day}"


def format_time(value: datetime, tz_name: str | None) -> str:
    local = _local(value, tz_name)
    return f"{local:%I:%M %p}".lstrip("0")


def _link_line(booking) -> str:
    return f"**Meeting Link:** {booking.meeting_url}\n" if booking.meeting_url else ""


class NotificationDispatcher:
    """announce(kind, booking, context) -> bool"""

    def __init__(self, sink: NotificationSink, frontend_url: str = "", timeout: float = 10.0):
        self.sink = sink
        self.frontend_url = frontend_url.rstrip("/")
        self.timeout = timeout

    async def announce(
        self,
        kind: BookingEventKind | str,
        booking,
        context: dict[str, Any] | None = None,
    ) -> bool:
        context = context or {}
        try:
            kind = BookingEventKind(kind)
            title, content = self.format_message(kind, booking, context)
            ok = await asyncio.wait_for(self.sink.send(title, content), timeout=self.timeout)
            if not ok:
                raise NotificationFailure(f"sink rejected {kind.value} notification")
        except asyncio.TimeoutError:
            logger.warning(
                "Notification %s for booking %s timed out after %.1fs",
                kind, booking.id, self.timeout,
            )
            return False
        except NotificationFailure as exc:
            logger.warning("Notification failed for booking %s: %s", booking.id, exc)
            return False
        except Exception:
            logger.exception("Notification %s for booking %s raised", kind, booking.id)
            return False

        logger.info("Notification sent: kind=%s booking=%s", kind.value, booking.id)
        return True

    # ------------------------------------------------------------------
    # Formatting
    # ------------------------------------------------------------------

    def format_message(self, kind: BookingEventKind, booking, context: dict) -> tuple[str, str]:
        formatter = {
            BookingEventKind.CREATED: self._created,
            BookingEventKind.CONFIRMED: self._confirmed,
            BookingEventKind.RESCHEDULED: self._rescheduled,
            BookingEventKind.CANCELLED: self._cancelled,
            BookingEventKind.REMINDER: self._reminder,
        }[kind]
        return formatter(booking, context)

    def _property_title(self, context: dict) -> str:
        prop = context.get("property")
        return prop.title if prop is not None else "Property"

    def _created(self, booking, context):
        title = self._property_title(context)
        prop = context.get("property")
        tz = booking.timezone or "UTC"
        property_link = (
            f"**Property Link:** {self.frontend_url}/properties/{prop.slug}\n\n"
            if prop is not None and self.frontend_url
            else ""
        )
        content = (
            "**New Virtual Tour Booking**\n\n"
            "A virtual property tour has been scheduled:\n\n"
            f"**Property:** {title}\n"
            f"**Guest:** {booking.user_name} ({booking.user_email})\n"
            f"**Date:** {format_date(booking.scheduled_at, tz)}\n"
            f"**Time:** {format_time(booking.scheduled_at, tz)} ({tz})\n"
            f"**Duration:** {booking.duration or 30} minutes\n"
            f"**Platform:** {booking.platform}\n"
            f"{_link_line(booking)}\n"
            f"**Notes:** {booking.notes or 'None'}\n\n"
            f"{property_link}"
            f"**Booking ID:** #{booking.id}\n"
            f"**Status:** {booking.status}\n\n"
            f"{_FOOTER}"
        )
        return f"New Tour Booking: {title}", content

    def _confirmed(self, booking, context):
        tz = booking.timezone or "UTC"
        content = (
            f"Tour booking #{booking.id} has been confirmed for "
            f"{booking.user_name} ({booking.user_email}) on "
            f"{format_date(booking.scheduled_at, tz)} at {format_time(booking.scheduled_at, tz)} ({tz}).\n\n"
            f"**Property:** {self._property_title(context)}\n"
            f"{_link_line(booking)}"
            f"**Admin Notes:** {booking.admin_notes or 'None'}"
        )
        return "Booking Confirmed", content

    def _rescheduled(self, booking, context):
        title = self._property_title(context)
        old_at = context.get("old_scheduled_at")
        old_line = (
            f"**Original Time:** {format_date(old_at, 'UTC')} {format_time(old_at, 'UTC')} UTC\n"
            if old_at is not None
            else ""
        )
        content = (
            "**Tour Rescheduled**\n\n"
            f"{booking.user_name} ({booking.user_email}) has rescheduled their virtual property tour.\n\n"
            f"**Property:** {title}\n\n"
            f"{old_line}"
            f"**New Time:** {format_date(booking.scheduled_at, 'UTC')} {format_time(booking.scheduled_at, 'UTC')} UTC\n\n"
            f"**Meeting Link:** {booking.meeting_url or 'Phone call'}\n\n"
            "Please update your calendar accordingly.\n\n"
            f"{_FOOTER}"
        )
        return f"Tour Rescheduled: {title}", content

    def _cancelled(self, booking, context):
        title = self._property_title(context)
        tz = booking.timezone or "UTC"
        cancelled_at = context.get("cancelled_at") or utcnow()
        content = (
            "**Tour Cancelled**\n\n"
            "A virtual property tour has been cancelled:\n\n"
            f"**Property:** {title}\n"
            f"**Guest:** {booking.user_name} ({booking.user_email})\n"
            f"**Original Date:** {format_date(booking.scheduled_at, tz, with_year=False)}\n"
            f"**Original Time:** {format_time(booking.scheduled_at, tz)}\n"
            f"**Platform:** {booking.platform}\n\n"
            f"**Booking ID:** #{booking.id}\n"
            f"**Cancelled At:** {as_utc(cancelled_at):%Y-%m-%d %H:%M} UTC\n\n"
            f"{_FOOTER}"
        )
        return f"Tour Cancelled: {title}", content

    def _reminder(self, booking, context):
        title = self._property_title(context)
        tz = booking.timezone or "UTC"
        content = (
            "**Tour Reminder**\n\n"
            "Your virtual property tour is scheduled for tomorrow:\n\n"
            f"**Property:** {title}\n"
            f"**Date:** {format_date(booking.scheduled_at, tz, with_year=False)}\n"
            f"**Time:** {format_time(booking.scheduled_at, tz)} ({tz})\n"
            f"**Platform:** {booking.platform}\n"
            f"{_link_line(booking)}\n"
            f"**Guest:** {booking.user_name} ({booking.user_email})\n\n"
            "Please ensure you're ready to join the meeting at the scheduled time.\n\n"
            f"**Booking ID:** #{booking.id}"
        )
        return f"Tour Reminder: {title} - Tomorrow", content
