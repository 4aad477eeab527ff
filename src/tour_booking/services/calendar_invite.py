"""iCalendar (.ics) invites for tour bookings."""

from datetime import datetime, timedelta

from tour_booking.services.clock import as_utc, utcnow

PRODID = "-//3B Solution//Virtual Property Tour//EN"
UID_DOMAIN = "3bsolution.com"


def _ical_datetime(value: datetime) -> str:
    return as_utc(value).strftime("%Y%m%dT%H%M%SZ")


def _escape(text: str) -> str:
    """Escape TEXT values per RFC 5545 section 3.3.11."""
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def generate_calendar_invite(booking, property_title: str, now: datetime | None = None) -> str:
    """Return a VCALENDAR document with one VEVENT and a 15-minute alarm."""
    start = as_utc(booking.scheduled_at)
    end = start + timedelta(minutes=booking.duration or 30)

    description = f"Virtual tour for {property_title}\n\nMeeting Type: {booking.platform}"
    if booking.meeting_url:
        description += f"\nMeeting Link: {booking.meeting_url}"
    description += f"\n\nNotes: {booking.notes or 'N/A'}"

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:REQUEST",
        "BEGIN:VEVENT",
        f"UID:tour-{booking.id}@{UID_DOMAIN}",
        f"DTSTAMP:{_ical_datetime(now or utcnow())}",
        f"DTSTART:{_ical_datetime(start)}",
        f"DTEND:{_ical_datetime(end)}",
        f"SUMMARY:{_escape(f'Virtual Property Tour - {property_title}')}",
        f"DESCRIPTION:{_escape(description)}",
        f"LOCATION:{_escape(booking.meeting_url or 'Online')}",
        "STATUS:CONFIRMED",
        # Each reschedule bumps version, so clients replace the old event
        f"SEQUENCE:{max((booking.version or 1) - 1, 0)}",
        "BEGIN:VALARM",
        "TRIGGER:-PT15M",
        "DESCRIPTION:Reminder: Virtual Property Tour in 15 minutes",
        "ACTION:DISPLAY",
        "END:VALARM",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"
