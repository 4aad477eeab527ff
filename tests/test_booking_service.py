"""Tests for BookingService lifecycle operations."""

import re
from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import select, update

from tour_booking.domain.enums import BookingAuditEvent, MeetingPlatform
from tour_booking.domain.errors import (
    BookingValidationError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
)
from tour_booking.domain.models import Booking, TourFeedback
from tour_booking.services.access_policy import Actor
from tour_booking.services.booking_service import BookingService, resolve_local_datetime
from tour_booking.services.clock import as_utc, utcnow
from tour_booking.services.credential_store import StaticCredentialStore
from tour_booking.services.meeting_provisioner import MeetingProvisioner

ZOOM_RE = re.compile(r"^https://zoom\.us/j/\d{12}\?pwd=[A-Za-z0-9]{12}$")


def _owner(booking) -> Actor:
    return Actor(user_id=booking.user_id)


def _future(days: int = 3) -> datetime:
    return (utcnow() + timedelta(days=days)).replace(microsecond=0)


# ---------------------------------------------------------------------------
# Local time resolution
# ---------------------------------------------------------------------------


class TestResolveLocalDatetime:
    def test_converts_local_time_to_utc(self):
        assert resolve_local_datetime(date(2030, 5, 6), "10:30", "America/New_York") == datetime(
            2030, 5, 6, 14, 30, tzinfo=timezone.utc
        )

    def test_accepts_iso_date_string(self):
        assert resolve_local_datetime("2030-01-15", "09:00", "UTC") == datetime(
            2030, 1, 15, 9, 0, tzinfo=timezone.utc
        )

    @pytest.mark.parametrize("bad_time", ["9am", "25:00", "10:60", ""])
    def test_rejects_malformed_time(self, bad_time):
        with pytest.raises(BookingValidationError):
            resolve_local_datetime(date(2030, 5, 6), bad_time, "UTC")

    def test_rejects_malformed_date(self):
        with pytest.raises(BookingValidationError):
            resolve_local_datetime("06/05/2030", "10:00", "UTC")

    def test_rejects_unknown_timezone(self):
        with pytest.raises(BookingValidationError):
            resolve_local_datetime(date(2030, 5, 6), "10:00", "Not/AZone")


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCreate:
    async def test_zoom_without_credentials_gets_placeholder(
        self, booking_service, make_user, make_property, fake_sink, booking_events
    ):
        user = await make_user()
        prop = await make_property(title="Harbor Loft")

        booking = await booking_service.create(
            user_id=user.id,
            property_id=prop.id,
            platform=MeetingPlatform.ZOOM,
            scheduled_at=_future(),
            attendee_email=user.email,
            attendee_name=user.name,
        )

        assert booking.status == "scheduled"
        assert booking.reminder_sent is False
        assert booking.version == 1
        assert booking.duration == 30
        assert ZOOM_RE.match(booking.meeting_url)
        assert fake_sink.titles == ["New Tour Booking: Harbor Loft"]
        events = await booking_events(booking.id)
        assert [e.event_type for e in events] == [BookingAuditEvent.CREATED.value]
        assert events[0].to_status == "scheduled"

    async def test_phone_booking_has_no_link(self, booking_service, make_user, make_property):
        user = await make_user()
        prop = await make_property()

        booking = await booking_service.create(user.id, prop.id, "Phone", _future())

        assert booking.meeting_url is None
        assert booking.platform == "Phone"

    async def test_naive_time_is_treated_as_utc(self, booking_service, make_user, make_property):
        user = await make_user()
        prop = await make_property()
        naive = _future().replace(tzinfo=None)

        booking = await booking_service.create(user.id, prop.id, "Zoom", naive)

        assert as_utc(booking.scheduled_at) == naive.replace(tzinfo=timezone.utc)

    async def test_missing_property_is_not_found(self, booking_service, make_user, fake_sink):
        user = await make_user()
        with pytest.raises(NotFoundError):
            await booking_service.create(user.id, "no-such-property", "Zoom", _future())
        assert fake_sink.sent == []

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"platform": "Skype"},
            {"duration": 0},
            {"duration": 481},
            {"timezone": "Moon/Base"},
            {"scheduled_at": "past"},
        ],
    )
    async def test_invalid_input_is_rejected(self, booking_service, make_user, make_property, kwargs):
        user = await make_user()
        prop = await make_property()
        args = {"platform": "Zoom", "scheduled_at": _future(), **kwargs}
        if args["scheduled_at"] == "past":
            args["scheduled_at"] = utcnow() - timedelta(hours=1)

        with pytest.raises(BookingValidationError):
            await booking_service.create(user.id, prop.id, **args)

    async def test_notification_failure_does_not_fail_create(
        self, booking_service, make_user, make_property, fake_sink
    ):
        fake_sink.ok = False
        user = await make_user()
        prop = await make_property()

        booking = await booking_service.create(user.id, prop.id, "Teams", _future())

        assert booking.status == "scheduled"

    async def test_provider_outage_does_not_fail_create(
        self, db_session, dispatcher, make_user, make_property
    ):
        def handler(request):
            return httpx.Response(503)

        store = StaticCredentialStore({
            "ZOOM_ACCOUNT_ID": "a", "ZOOM_CLIENT_ID": "b", "ZOOM_CLIENT_SECRET": "c",
        })
        service = BookingService(
            db_session,
            MeetingProvisioner(store, transport=httpx.MockTransport(handler)),
            dispatcher,
        )
        user = await make_user()
        prop = await make_property()

        booking = await service.create(user.id, prop.id, "Zoom", _future())

        assert ZOOM_RE.match(booking.meeting_url)


# ---------------------------------------------------------------------------
# Confirm
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestConfirm:
    async def test_confirm_scheduled_booking(self, booking_service, make_booking, fake_sink, booking_events):
        booking = await make_booking()

        confirmed = await booking_service.confirm(booking.id, "admin-1", admin_notes="Call first")

        assert confirmed.status == "confirmed"
        assert confirmed.confirmed_by == "admin-1"
        assert confirmed.confirmed_at is not None
        assert confirmed.admin_notes == "Call first"
        assert confirmed.version == 2
        assert fake_sink.titles == ["Booking Confirmed"]
        assert [e.event_type for e in await booking_events(booking.id)] == ["confirmed"]

    @pytest.mark.parametrize("status", ["confirmed", "cancelled", "completed"])
    async def test_confirm_requires_scheduled(self, booking_service, make_booking, status):
        booking = await make_booking(status=status)
        with pytest.raises(InvalidStateError):
            await booking_service.confirm(booking.id, "admin-1")

    async def test_confirm_unknown_booking(self, booking_service):
        with pytest.raises(NotFoundError):
            await booking_service.confirm("missing", "admin-1")


# ---------------------------------------------------------------------------
# Reschedule
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestReschedule:
    async def test_zoom_create_then_reschedule_changes_link(
        self, booking_service, make_user, make_property, fake_sink, booking_events
    ):
        user = await make_user()
        prop = await make_property(title="Harbor Loft")
        booking = await booking_service.create(user.id, prop.id, "Zoom", _future(2))
        first_link = booking.meeting_url
        new_day = (utcnow() + timedelta(days=5)).date()

        moved = await booking_service.reschedule(booking.id, Actor(user.id), new_day, "15:00")

        assert moved.status == "scheduled"
        assert ZOOM_RE.match(moved.meeting_url)
        assert moved.meeting_url != first_link
        assert as_utc(moved.scheduled_at) == datetime(
            new_day.year, new_day.month, new_day.day, 15, 0, tzinfo=timezone.utc
        )
        assert moved.version == 2
        assert fake_sink.titles == ["New Tour Booking: Harbor Loft", "Tour Rescheduled: Harbor Loft"]
        types = {e.event_type for e in await booking_events(booking.id)}
        assert types == {"created", "reschedule_requested", "rescheduled"}

    async def test_reschedule_resets_reminder_and_confirmation(self, booking_service, make_booking):
        booking = await make_booking(status="confirmed", reminder_sent=True)
        new_day = (utcnow() + timedelta(days=6)).date()

        moved = await booking_service.reschedule(booking.id, _owner(booking), new_day, "10:00")

        assert moved.reminder_sent is False
        assert moved.status == "scheduled"
        assert moved.confirmed_at is None
        assert moved.confirmed_by is None

    async def test_reschedule_uses_booking_timezone(self, booking_service, make_booking):
        booking = await make_booking(timezone="America/Los_Angeles")

        moved = await booking_service.reschedule(booking.id, _owner(booking), date(2031, 1, 15), "09:00")

        # PST is UTC-8 in January
        assert as_utc(moved.scheduled_at) == datetime(2031, 1, 15, 17, 0, tzinfo=timezone.utc)

    async def test_reschedule_can_switch_platform(self, booking_service, make_booking):
        booking = await make_booking(platform="Zoom")

        moved = await booking_service.reschedule(
            booking.id, _owner(booking), date(2031, 1, 15), "09:00", platform="Phone"
        )

        assert moved.platform == "Phone"
        assert moved.meeting_url is None

    async def test_non_owner_is_forbidden(self, booking_service, make_booking, reload):
        booking = await make_booking()

        with pytest.raises(ForbiddenError):
            await booking_service.reschedule(booking.id, Actor("stranger"), date(2031, 1, 15), "09:00")

        assert (await reload(booking.id)).version == 1

    async def test_admin_may_reschedule_any_booking(self, booking_service, make_booking, admin_actor):
        booking = await make_booking()
        moved = await booking_service.reschedule(booking.id, admin_actor, date(2031, 1, 15), "09:00")
        assert moved.status == "scheduled"

    async def test_past_time_is_rejected(self, booking_service, make_booking):
        booking = await make_booking()
        with pytest.raises(BookingValidationError):
            await booking_service.reschedule(booking.id, _owner(booking), date(2020, 1, 1), "09:00")

    @pytest.mark.parametrize("status", ["cancelled", "completed"])
    async def test_terminal_booking_cannot_be_rescheduled(self, booking_service, make_booking, status):
        booking = await make_booking(status=status)
        with pytest.raises(InvalidStateError):
            await booking_service.reschedule(booking.id, _owner(booking), date(2031, 1, 15), "09:00")

    async def test_concurrent_cancel_wins_over_reschedule(
        self, db_session, dispatcher, make_booking, reload, fake_sink
    ):
        booking = await make_booking()
        original_link = booking.meeting_url

        async def cancel_while_provisioning(*args, **kwargs):
            # Another writer commits a cancel while the new link is being created
            await db_session.execute(
                update(Booking)
                .where(Booking.id == booking.id)
                .values(status="cancelled", version=Booking.version + 1)
                .execution_options(synchronize_session=False)
            )
            await db_session.commit()
            return "https://zoom.us/j/999999999999?pwd=racerracer12"

        provisioner = AsyncMock()
        provisioner.provision.side_effect = cancel_while_provisioning
        service = BookingService(db_session, provisioner, dispatcher)

        with pytest.raises(InvalidStateError):
            await service.reschedule(booking.id, _owner(booking), date(2031, 1, 15), "09:00")

        stored = await reload(booking.id)
        assert stored.status == "cancelled"
        assert stored.meeting_url == original_link
        assert stored.version == 2
        assert fake_sink.sent == []


# ---------------------------------------------------------------------------
# Cancel / complete
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestCancel:
    async def test_owner_cancels(self, booking_service, make_booking, fake_sink, booking_events):
        booking = await make_booking()

        cancelled = await booking_service.cancel(booking.id, _owner(booking))

        assert cancelled.status == "cancelled"
        assert len(fake_sink.titles) == 1
        assert fake_sink.titles[0].startswith("Tour Cancelled: ")
        assert [e.event_type for e in await booking_events(booking.id)] == ["cancelled"]

    async def test_double_cancel_is_idempotent(self, booking_service, make_booking, fake_sink, booking_events):
        booking = await make_booking()

        await booking_service.cancel(booking.id, _owner(booking))
        again = await booking_service.cancel(booking.id, _owner(booking))

        assert again.status == "cancelled"
        assert again.version == 2
        assert len(fake_sink.sent) == 1
        assert len(await booking_events(booking.id)) == 1

    async def test_stranger_cannot_cancel(self, booking_service, make_booking, reload):
        booking = await make_booking()

        with pytest.raises(ForbiddenError):
            await booking_service.cancel(booking.id, Actor("stranger"))

        assert (await reload(booking.id)).status == "scheduled"

    async def test_admin_with_capability_cancels_any(self, booking_service, make_booking, admin_actor):
        booking = await make_booking()
        assert (await booking_service.cancel(booking.id, admin_actor)).status == "cancelled"

    async def test_admin_without_capability_is_forbidden(self, booking_service, make_booking):
        booking = await make_booking()
        admin = Actor(user_id="admin-2", role="admin", capabilities=frozenset())
        with pytest.raises(ForbiddenError):
            await booking_service.cancel(booking.id, admin)

    async def test_completed_booking_cannot_be_cancelled(self, booking_service, make_booking):
        booking = await make_booking(status="completed")
        with pytest.raises(InvalidStateError):
            await booking_service.cancel(booking.id, _owner(booking))


@pytest.mark.asyncio
class TestComplete:
    @pytest.mark.parametrize("status", ["scheduled", "confirmed"])
    async def test_system_completes_active_booking(self, booking_service, make_booking, booking_events, status):
        booking = await make_booking(status=status)

        done = await booking_service.complete(booking.id)

        assert done.status == "completed"
        events = await booking_events(booking.id)
        assert events[0].actor_id == "system"
        assert events[0].from_status == status

    async def test_completion_is_not_announced(self, booking_service, make_booking, fake_sink):
        booking = await make_booking()
        await booking_service.complete(booking.id, _owner(booking))
        assert fake_sink.sent == []

    async def test_cancelled_booking_cannot_complete(self, booking_service, make_booking):
        booking = await make_booking(status="cancelled")
        with pytest.raises(InvalidStateError):
            await booking_service.complete(booking.id)


# ---------------------------------------------------------------------------
# Feedback / listings
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
class TestFeedback:
    async def test_feedback_completes_booking(self, db_session, booking_service, make_booking, reload):
        booking = await make_booking(status="confirmed")

        feedback = await booking_service.record_feedback(
            booking.id,
            _owner(booking),
            rating=5,
            tour_quality=4,
            property_interest="very_interested",
            would_recommend=True,
            next_steps="schedule_visit",
        )

        assert feedback.id is not None
        assert (await reload(booking.id)).status == "completed"
        rows = (await db_session.execute(select(TourFeedback))).scalars().all()
        assert [(r.rating, r.property_interest) for r in rows] == [(5, "very_interested")]

    @pytest.mark.parametrize("kwargs", [{"rating": 0}, {"rating": 6}, {"rating": 3, "tour_quality": 9},
                                        {"rating": 3, "next_steps": "buy_now"}])
    async def test_invalid_feedback_is_rejected(self, booking_service, make_booking, kwargs):
        booking = await make_booking()
        with pytest.raises(BookingValidationError):
            await booking_service.record_feedback(booking.id, _owner(booking), **kwargs)

    async def test_feedback_on_cancelled_booking_is_not_stored(self, db_session, booking_service, make_booking):
        booking = await make_booking(status="cancelled")

        with pytest.raises(InvalidStateError):
            await booking_service.record_feedback(booking.id, _owner(booking), rating=4)

        rows = (await db_session.execute(select(TourFeedback))).scalars().all()
        assert rows == []


@pytest.mark.asyncio
class TestListings:
    async def test_list_for_user_newest_first(self, booking_service, make_user, make_booking):
        user = await make_user()
        soon = await make_booking(user=user, scheduled_at=_future(1))
        later = await make_booking(user=user, scheduled_at=_future(9))
        await make_booking()  # someone else's

        assert [b.id for b in await booking_service.list_for_user(user.id)] == [later.id, soon.id]

    async def test_list_bookings_filters(self, booking_service, make_booking):
        agent_id = "agent-7"
        a = await make_booking(expert_id=agent_id, scheduled_at=_future(2))
        b = await make_booking(expert_id=agent_id, scheduled_at=_future(4), status="confirmed")
        await make_booking(expert_id="agent-8", scheduled_at=_future(3))
        await make_booking(expert_id=agent_id, scheduled_at=utcnow() - timedelta(days=2), status="completed")

        upcoming = await booking_service.list_bookings(expert_id=agent_id, from_date=utcnow())
        assert [x.id for x in upcoming] == [a.id, b.id]

        confirmed = await booking_service.list_bookings(expert_id=agent_id, status="confirmed")
        assert [x.id for x in confirmed] == [b.id]

        assert len(await booking_service.list_bookings(limit=2)) == 2


@pytest.mark.asyncio
class TestFeedbackReads:
    async def test_property_feedback_newest_first(
        self, booking_service, make_property, make_booking, make_feedback
    ):
        prop = await make_property()
        now = utcnow()
        older = await make_feedback(
            await make_booking(prop=prop, status="completed"), rating=3, created_at=now - timedelta(days=2)
        )
        newer = await make_feedback(await make_booking(prop=prop, status="completed"), rating=5, created_at=now)
        await make_feedback()  # another property

        rows = await booking_service.list_feedback_for_property(prop.id)

        assert [f.id for f in rows] == [newer.id, older.id]

    async def test_all_feedback_carries_property_and_author(
        self, booking_service, make_user, make_property, make_booking, make_feedback
    ):
        user = await make_user(name="Ann Reviewer", email="ann@example.com")
        prop = await make_property(title="Harbor Loft")
        now = utcnow()
        first = await make_feedback(
            await make_booking(user=user, prop=prop, status="completed"), created_at=now - timedelta(hours=1)
        )
        second = await make_feedback(created_at=now)

        rows = await booking_service.list_all_feedback()

        assert [row[0].id for row in rows] == [second.id, first.id]
        assert rows[1][1:] == ("Harbor Loft", "Ann Reviewer", "ann@example.com")

    async def test_property_rating(self, booking_service, make_property, make_booking, make_feedback):
        prop = await make_property()
        for rating in (5, 4, 2):
            await make_feedback(await make_booking(prop=prop, status="completed"), rating=rating)

        rating = await booking_service.property_rating(prop.id)

        assert rating["count"] == 3
        assert rating["average"] == pytest.approx(11 / 3)

    async def test_property_without_feedback_has_no_rating(self, booking_service, make_property):
        prop = await make_property()
        assert await booking_service.property_rating(prop.id) is None
