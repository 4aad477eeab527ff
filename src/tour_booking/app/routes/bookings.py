"""Tour booking API endpoints.

Every mutation goes through BookingService, which validates the transition
with the BookingStateMachine and writes a BookingEvent audit record.
Domain errors carry their HTTP status and are mapped here.
"""

import logging
from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.app.config import get_settings
from tour_booking.app.routes.auth import get_current_actor
from tour_booking.domain.enums import BookingStatus, Capability
from tour_booking.domain.errors import BookingError
from tour_booking.domain.schemas import (
    AvailabilityResponse,
    AvailabilityWindowResponse,
    BookingConfirm,
    BookingCreate,
    BookingReschedule,
    BookingResponse,
    BusySlot,
    FeedbackAdminItem,
    FeedbackCreate,
    FeedbackDetail,
    FeedbackResponse,
    PropertyRatingResponse,
)
from tour_booking.infra.database import get_db
from tour_booking.services.access_policy import Actor
from tour_booking.services.auth_service import get_user_by_id
from tour_booking.services.availability_service import AvailabilityCalculator
from tour_booking.services.booking_service import BookingService
from tour_booking.services.calendar_invite import generate_calendar_invite
from tour_booking.services.credential_store import SiteSettingsCredentialStore
from tour_booking.services.email_service import SendGridNotificationSink
from tour_booking.services.meeting_provisioner import MeetingProvisioner
from tour_booking.services.notification_service import NotificationDispatcher
from tour_booking.services.property_lookup import get_property_summary

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bookings", tags=["bookings"])
agents_router = APIRouter(prefix="/api/agents", tags=["availability"])
feedback_router = APIRouter(prefix="/api/feedback", tags=["feedback"])


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def get_dispatcher() -> NotificationDispatcher:
    settings = get_settings()
    return NotificationDispatcher(
        SendGridNotificationSink(),
        frontend_url=settings.frontend_url,
        timeout=settings.notification_timeout_seconds,
    )


async def get_booking_service(
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
) -> BookingService:
    settings = get_settings()
    provisioner = MeetingProvisioner(
        SiteSettingsCredentialStore(db),
        timeout=settings.provider_timeout_seconds,
    )
    return BookingService(db, provisioner, dispatcher)


def _http_error(exc: BookingError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _can_view(actor: Actor, booking) -> bool:
    return (
        actor.owns(booking)
        or booking.expert_id == actor.user_id
        or actor.can(Capability.LIST_ALL_BOOKINGS)
    )


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


@router.get("/mine", response_model=list[BookingResponse])
async def list_my_bookings(
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.list_for_user(actor.user_id)


@router.get("", response_model=list[BookingResponse])
async def list_bookings(
    expert_id: Optional[str] = Query(None),
    status: Optional[BookingStatus] = Query(None),
    from_date: Optional[datetime] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Admin listing, ascending by tour time."""
    if not actor.can(Capability.LIST_ALL_BOOKINGS):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return await service.list_bookings(
        expert_id=expert_id, status=status, from_date=from_date, limit=limit
    )


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        booking = await service.get(booking_id)
    except BookingError as exc:
        raise _http_error(exc)
    if not _can_view(actor, booking):
        raise HTTPException(status_code=403, detail="Access denied")
    return booking


@router.get("/{booking_id}/calendar.ics")
async def download_calendar_invite(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
    db: AsyncSession = Depends(get_db),
):
    try:
        booking = await service.get(booking_id)
    except BookingError as exc:
        raise _http_error(exc)
    if not _can_view(actor, booking):
        raise HTTPException(status_code=403, detail="Access denied")

    prop = await get_property_summary(db, booking.property_id)
    ics = generate_calendar_invite(booking, prop.title if prop else "Property")
    return Response(
        content=ics,
        media_type="text/calendar",
        headers={"Content-Disposition": f'attachment; filename="tour-{booking.id}.ics"'},
    )


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post("", response_model=BookingResponse, status_code=201)
async def create_booking(
    body: BookingCreate,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
    db: AsyncSession = Depends(get_db),
):
    user = await get_user_by_id(db, actor.user_id)
    try:
        return await service.create(
            user_id=actor.user_id,
            property_id=body.property_id,
            platform=body.platform,
            scheduled_at=body.scheduled_at,
            duration=body.duration,
            timezone=body.timezone,
            attendee_email=body.attendee_email or user.email,
            attendee_name=body.attendee_name or user.name,
            notes=body.notes,
            lead_id=body.lead_id,
            expert_id=body.expert_id,
        )
    except BookingError as exc:
        raise _http_error(exc)


@router.post("/{booking_id}/confirm", response_model=BookingResponse)
async def confirm_booking(
    booking_id: str,
    body: BookingConfirm | None = None,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    if not actor.can(Capability.CONFIRM_BOOKING):
        raise HTTPException(status_code=403, detail="Only admins can confirm bookings")
    try:
        return await service.confirm(
            booking_id, actor.user_id, admin_notes=body.admin_notes if body else None
        )
    except BookingError as exc:
        raise _http_error(exc)


@router.post("/{booking_id}/reschedule", response_model=BookingResponse)
async def reschedule_booking(
    booking_id: str,
    body: BookingReschedule,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        return await service.reschedule(
            booking_id, actor, body.new_date, body.new_time, platform=body.platform
        )
    except BookingError as exc:
        raise _http_error(exc)


@router.post("/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        return await service.cancel(booking_id, actor)
    except BookingError as exc:
        raise _http_error(exc)


@router.post("/{booking_id}/complete", response_model=BookingResponse)
async def complete_booking(
    booking_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        return await service.complete(booking_id, actor)
    except BookingError as exc:
        raise _http_error(exc)


@router.post("/{booking_id}/feedback", response_model=FeedbackResponse, status_code=201)
async def submit_feedback(
    booking_id: str,
    body: FeedbackCreate,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    try:
        return await service.record_feedback(
            booking_id,
            actor,
            rating=body.rating,
            tour_quality=body.tour_quality,
            property_interest=body.property_interest,
            would_recommend=body.would_recommend,
            comments=body.comments,
            next_steps=body.next_steps,
        )
    except BookingError as exc:
        raise _http_error(exc)


@feedback_router.get("", response_model=list[FeedbackAdminItem])
async def list_all_feedback(
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Admin listing, newest first, with property title and author."""
    if not actor.can(Capability.LIST_ALL_FEEDBACK):
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    rows = await service.list_all_feedback()
    return [
        FeedbackAdminItem(
            **FeedbackDetail.model_validate(feedback).model_dump(),
            property_title=title,
            user_name=name,
            user_email=email,
        )
        for feedback, title, name, email in rows
    ]


@feedback_router.get("/properties/{property_id}", response_model=list[FeedbackDetail])
async def list_property_feedback(
    property_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    return await service.list_feedback_for_property(property_id)


@feedback_router.get(
    "/properties/{property_id}/rating", response_model=Optional[PropertyRatingResponse]
)
async def property_rating(
    property_id: str,
    actor: Actor = Depends(get_current_actor),
    service: BookingService = Depends(get_booking_service),
):
    """Average rating and count; null when the property has no feedback yet."""
    return await service.property_rating(property_id)


# ---------------------------------------------------------------------------
# Availability
# ---------------------------------------------------------------------------


@agents_router.get("/{agent_id}/availability", response_model=AvailabilityResponse)
async def agent_availability(
    agent_id: str,
    day: date = Query(..., alias="date"),
    actor: Actor = Depends(get_current_actor),
    db: AsyncSession = Depends(get_db),
):
    """Active windows for the date plus the bookings already holding time in them."""
    result = await AvailabilityCalculator(db).available_slots(agent_id, day)
    return AvailabilityResponse(
        agent_id=agent_id,
        date=day,
        windows=[AvailabilityWindowResponse.model_validate(w) for w in result.windows],
        busy=[
            BusySlot(
                booking_id=b.id,
                scheduled_at=b.scheduled_at,
                duration=b.duration,
                status=b.status,
            )
            for b in result.conflicting_bookings
        ],
    )
