"""Pydantic v2 schemas for API request/response validation."""

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from tour_booking.domain.enums import (
    FeedbackNextStep,
    MeetingPlatform,
    PropertyInterest,
)


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Schema for user API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str
    is_active: bool


# ---------------------------------------------------------------------------
# Bookings
# ---------------------------------------------------------------------------


class BookingCreate(BaseModel):
    """Schema for booking a virtual tour."""

    property_id: str
    platform: MeetingPlatform
    scheduled_at: datetime
    duration: int = Field(default=30, ge=1, le=480)
    timezone: str = "UTC"
    notes: str | None = None
    # Defaults to the signed-in user's email / name
    attendee_email: EmailStr | None = None
    attendee_name: str | None = None
    lead_id: str | None = None
    expert_id: str | None = None


class BookingReschedule(BaseModel):
    """New local date and time, interpreted in the booking's timezone."""

    new_date: date
    new_time: str = Field(pattern=r"^([01]?\d|2[0-3]):[0-5]\d$")
    platform: MeetingPlatform | None = None


class BookingConfirm(BaseModel):
    admin_notes: str | None = None


class FeedbackCreate(BaseModel):
    """Post-tour feedback; submitting it completes the booking."""

    rating: int = Field(ge=1, le=5)
    tour_quality: int | None = Field(default=None, ge=1, le=5)
    property_interest: PropertyInterest | None = None
    would_recommend: bool | None = None
    comments: str | None = None
    next_steps: FeedbackNextStep | None = None


class BookingResponse(BaseModel):
    """Schema for booking API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    property_id: str
    lead_id: str | None = None
    expert_id: str | None = None
    platform: str
    scheduled_at: datetime
    duration: int
    timezone: str
    meeting_url: str | None = None
    status: str
    reminder_sent: bool
    notes: str | None = None
    admin_notes: str | None = None
    user_email: str | None = None
    user_name: str | None = None
    confirmed_at: datetime | None = None
    confirmed_by: str | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class FeedbackResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    booking_id: str
    rating: int
    tour_quality: int | None = None
    property_interest: str | None = None
    would_recommend: bool | None = None
    comments: str | None = None
    next_steps: str | None = None


class FeedbackDetail(FeedbackResponse):
    user_id: str
    property_id: str
    created_at: datetime | None = None


class FeedbackAdminItem(FeedbackDetail):
    """Feedback row with the property and author it refers to."""

    property_title: str | None = None
    user_name: str | None = None
    user_email: str | None = None


class PropertyRatingResponse(BaseModel):
    average: float
    count: int


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


class AvailabilityWindowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    day_of_week: int
    start_time: str
    end_time: str
    timezone: str


class BusySlot(BaseModel):
    booking_id: str
    scheduled_at: datetime
    duration: int
    status: str


class AvailabilityResponse(BaseModel):
    agent_id: str
    date: date
    windows: list[AvailabilityWindowResponse] = []
    busy: list[BusySlot] = []


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------


class ReminderTickResponse(BaseModel):
    ok: bool = True
    results: dict[str, int]


class ImmediateReminderResponse(BaseModel):
    booking_id: str
    sent: bool
