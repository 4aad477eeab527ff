"""Shared test infrastructure for the tour booking test suite.

Provides:
- db_session: async SQLite in-memory session with all tables created
- fake_sink / dispatcher: notification sink that records (title, content) pairs
- provisioner: MeetingProvisioner with no credentials (placeholder links)
- booking_service: BookingService wired to the above
- make_user / make_property / make_booking / make_window: row factories
"""

import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# Import Base first, then models to register all tables
from tour_booking.infra.database import Base

import tour_booking.domain.models  # noqa: F401

from tour_booking.domain.models import AvailabilityWindow, Booking, BookingEvent, Property, TourFeedback, User
from tour_booking.services.access_policy import Actor, capabilities_for_role
from tour_booking.services.booking_service import BookingService
from tour_booking.services.clock import utcnow
from tour_booking.services.credential_store import StaticCredentialStore
from tour_booking.services.meeting_provisioner import MeetingProvisioner
from tour_booking.services.notification_service import NotificationDispatcher


# ---------------------------------------------------------------------------
# Database session fixture
# ---------------------------------------------------------------------------

@pytest.fixture
async def db_session():
    """Async SQLite in-memory session with all tables created.

    Creates a fresh engine + tables for each test, yields a session,
    then rolls back and tears down.
    """
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False,
    )

    async with session_factory() as session:
        yield session
        await session.rollback()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

class FakeSink:
    """Records every (title, content) it is asked to send."""

    def __init__(self, ok: bool = True):
        self.ok = ok
        self.sent: list[tuple[str, str]] = []
        self.side_effect = None

    async def send(self, title: str, content: str) -> bool:
        if self.side_effect is not None:
            await self.side_effect(title, content)
        if self.ok:
            self.sent.append((title, content))
        return self.ok

    @property
    def titles(self) -> list[str]:
        return [title for title, _ in self.sent]


@pytest.fixture
def fake_sink():
    return FakeSink()


@pytest.fixture
def dispatcher(fake_sink):
    return NotificationDispatcher(fake_sink, frontend_url="https://3bsolution.com", timeout=1.0)


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def provisioner():
    """No credentials configured: every platform gets a placeholder link."""
    return MeetingProvisioner(StaticCredentialStore())


@pytest.fixture
def booking_service(db_session, provisioner, dispatcher):
    return BookingService(db_session, provisioner, dispatcher)


@pytest.fixture
def admin_actor():
    return Actor(user_id="admin-1", role="admin", capabilities=capabilities_for_role("admin"))


# ---------------------------------------------------------------------------
# Row factories
# ---------------------------------------------------------------------------

@pytest.fixture
def make_user(db_session):
    """Factory for User rows."""

    async def _make(role: str = "visitor", name: str = "Jane Buyer", email: str | None = None) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email or f"{uuid.uuid4().hex[:8]}@example.com",
            name=name,
            role=role,
            is_active=True,
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _make


@pytest.fixture
def make_property(db_session):
    """Factory for Property rows."""

    async def _make(title: str = "Sunset Villa", slug: str | None = None) -> Property:
        prop = Property(
            id=str(uuid.uuid4()),
            title=title,
            slug=slug or f"sunset-villa-{uuid.uuid4().hex[:6]}",
        )
        db_session.add(prop)
        await db_session.commit()
        return prop

    return _make


@pytest.fixture
def make_booking(db_session, make_user, make_property):
    """Factory for Booking rows inserted directly (no provisioning, no notifications)."""

    async def _make(
        user: User | None = None,
        prop: Property | None = None,
        scheduled_at=None,
        status: str = "scheduled",
        platform: str = "Zoom",
        reminder_sent: bool = False,
        expert_id: str | None = None,
        timezone: str = "UTC",
        meeting_url: str | None = "https://zoom.us/j/123456789012?pwd=abcdefABCDEF",
    ) -> Booking:
        user = user or await make_user()
        prop = prop or await make_property()
        booking = Booking(
            id=str(uuid.uuid4()),
            user_id=user.id,
            property_id=prop.id,
            expert_id=expert_id,
            platform=platform,
            scheduled_at=scheduled_at or utcnow() + timedelta(days=3),
            duration=30,
            timezone=timezone,
            meeting_url=meeting_url,
            status=status,
            reminder_sent=reminder_sent,
            user_email=user.email,
            user_name=user.name,
            version=1,
        )
        db_session.add(booking)
        await db_session.commit()
        return booking

    return _make


@pytest.fixture
def make_window(db_session):
    """Factory for AvailabilityWindow rows."""

    async def _make(
        agent_id: str,
        day_of_week: int,
        start_time: str = "09:00",
        end_time: str = "17:00",
        timezone: str = "UTC",
        is_active: bool = True,
    ) -> AvailabilityWindow:
        window = AvailabilityWindow(
            agent_id=agent_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            timezone=timezone,
            is_active=is_active,
        )
        db_session.add(window)
        await db_session.commit()
        return window

    return _make


@pytest.fixture
def reload(db_session):
    """Re-read a booking from the database, bypassing the identity map."""

    async def _reload(booking_id: str) -> Booking:
        result = await db_session.execute(
            select(Booking)
            .where(Booking.id == booking_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    return _reload


@pytest.fixture
def booking_events(db_session):
    """Audit events for a booking, oldest first."""

    async def _events(booking_id: str) -> list[BookingEvent]:
        result = await db_session.execute(
            select(BookingEvent)
            .where(BookingEvent.booking_id == booking_id)
            .order_by(BookingEvent.created_at, BookingEvent.id)
        )
        return list(result.scalars().all())

    return _events


@pytest.fixture
def make_feedback(db_session, make_booking):
    """Factory for TourFeedback rows on a completed booking, with an explicit created_at."""

    async def _make(booking: Booking | None = None, rating: int = 4, created_at=None, **kwargs) -> TourFeedback:
        booking = booking or await make_booking(status="completed")
        feedback = TourFeedback(
            id=str(uuid.uuid4()),
            booking_id=booking.id,
            user_id=booking.user_id,
            property_id=booking.property_id,
            rating=rating,
            created_at=created_at or utcnow(),
            **kwargs,
        )
        db_session.add(feedback)
        await db_session.commit()
        return feedback

    return _make
