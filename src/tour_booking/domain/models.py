"""SQLAlchemy ORM models for tour bookings.

All models use SQLite-compatible types:
- String(36) for UUID primary keys
- JSON for structured data (no JSONB)
- DateTime for timestamps, stored as UTC
"""

import uuid

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.sql import func

from tour_booking.infra.database import Base


# ---------------------------------------------------------------------------
# Collaborator rows (owned by the surrounding CRM application)
# ---------------------------------------------------------------------------


class User(Base):
    """Visitor, agent, or admin account."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=False)
    role = Column(String(20), nullable=False, default="visitor")  # visitor, agent, admin
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=func.now())


class Property(Base):
    """Listed property. Only the fields tours need are mapped here."""

    __tablename__ = "properties"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String(255), nullable=False)
    slug = Column(String(255), unique=True, nullable=False, index=True)
    created_at = Column(DateTime, default=func.now())


class SiteSetting(Base):
    """Key/value settings; provider credentials live here."""

    __tablename__ = "site_settings"

    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(100), unique=True, nullable=False, index=True)
    value = Column(Text, nullable=True)
    category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


# ---------------------------------------------------------------------------
# Tour booking domain
# ---------------------------------------------------------------------------


class Booking(Base):
    """A virtual tour appointment linking a user, a property, and a platform.

    ``version`` is bumped by every committed mutation and is the
    compare-and-swap key for transitions.
    """

    __tablename__ = "bookings"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False)
    lead_id = Column(String(36), nullable=True)
    expert_id = Column(String(36), ForeignKey("users.id"), nullable=True, index=True)

    platform = Column(String(20), nullable=False)  # MeetingPlatform
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    duration = Column(Integer, nullable=False, default=30)
    timezone = Column(String(100), nullable=False, default="UTC")
    meeting_url = Column(Text, nullable=True)

    status = Column(String(20), nullable=False, default="scheduled")  # BookingStatus
    reminder_sent = Column(Boolean, nullable=False, default=False)

    notes = Column(Text, nullable=True)
    admin_notes = Column(Text, nullable=True)
    user_email = Column(String(320), nullable=True)
    user_name = Column(String(255), nullable=True)

    confirmed_at = Column(DateTime(timezone=True), nullable=True)
    confirmed_by = Column(String(36), nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), default=func.now())
    updated_at = Column(DateTime(timezone=True), default=func.now(), onupdate=func.now())


class BookingEvent(Base):
    """Immutable audit trail entry for booking state transitions."""

    __tablename__ = "booking_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    event_type = Column(String(50), nullable=False)  # BookingEventKind
    actor_id = Column(String(36), nullable=True)  # "system" for scheduler writes
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=True)
    data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=func.now())


class AvailabilityWindow(Base):
    """Recurring weekly slot in which an agent takes tours.

    day_of_week follows the JavaScript convention: 0 = Sunday ... 6 = Saturday.
    start_time / end_time are "HH:MM" in the window's own timezone.
    """

    __tablename__ = "availability_windows"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    timezone = Column(String(100), nullable=False, default="UTC")
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())


class TourFeedback(Base):
    """Visitor feedback recorded after a tour; recording it completes the booking."""

    __tablename__ = "tour_feedback"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    booking_id = Column(String(36), ForeignKey("bookings.id"), nullable=False, index=True)
    user_id = Column(String(36), ForeignKey("users.id"), nullable=False)
    property_id = Column(String(36), ForeignKey("properties.id"), nullable=False)
    rating = Column(Integer, nullable=False)  # 1-5
    tour_quality = Column(Integer, nullable=True)  # 1-5
    property_interest = Column(String(20), nullable=True)  # PropertyInterest
    would_recommend = Column(Boolean, nullable=True)
    comments = Column(Text, nullable=True)
    next_steps = Column(String(20), nullable=True)  # FeedbackNextStep
    created_at = Column(DateTime, default=func.now())
