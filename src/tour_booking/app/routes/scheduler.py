"""Reminder scheduler endpoints, for an external cron to drive ticks."""
import logging
from datetime import timedelta

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.app.config import get_settings
from tour_booking.app.routes.bookings import get_dispatcher
from tour_booking.domain.errors import BookingError
from tour_booking.domain.schemas import ImmediateReminderResponse, ReminderTickResponse
from tour_booking.infra.database import get_db
from tour_booking.services.notification_service import NotificationDispatcher
from tour_booking.services.reminder_scheduler import ReminderScheduler, SchedulerState

logger = logging.getLogger(__name__)


async def verify_internal_token(x_internal_token: str = Header(...)):
    """Verify that the request includes a valid internal auth token."""
    settings = get_settings()
    if x_internal_token != settings.internal_token:
        raise HTTPException(status_code=401, detail="Invalid internal token")


router = APIRouter(
    prefix="/api/internal/scheduler",
    tags=["reminder-scheduler"],
    dependencies=[Depends(verify_internal_token)],
)


def get_scheduler_state(request: Request) -> SchedulerState:
    """The SchedulerState shared with the in-process loop, created on first use."""
    state = getattr(request.app.state, "reminder_state", None)
    if state is None:
        state = request.app.state.reminder_state = SchedulerState()
    return state


def build_scheduler(
    db: AsyncSession,
    dispatcher: NotificationDispatcher,
    state: SchedulerState | None = None,
) -> ReminderScheduler:
    settings = get_settings()
    return ReminderScheduler(
        db,
        dispatcher,
        state=state,
        lead=timedelta(hours=settings.reminder_lead_hours),
        band=timedelta(minutes=settings.reminder_band_minutes),
    )


@router.post("/reminder-tick", response_model=ReminderTickResponse)
async def reminder_tick(
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    state: SchedulerState = Depends(get_scheduler_state),
):
    """Run one reminder tick.

    Called by Cloud Scheduler at the configured reminder interval when the
    in-process loop is disabled.
    """
    scheduler = build_scheduler(db, dispatcher, state=state)
    results = await scheduler.tick()

    logger.info("Reminder scheduler tick: %s", results)
    return {"ok": True, "results": results}


@router.post("/reminders/{booking_id}", response_model=ImmediateReminderResponse)
async def send_reminder_now(
    booking_id: str,
    db: AsyncSession = Depends(get_db),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    scheduler = build_scheduler(db, dispatcher)
    try:
        sent = await scheduler.send_immediate_reminder(booking_id)
    except BookingError as exc:
        raise HTTPException(status_code=exc.status_code, detail=exc.message)
    return {"booking_id": booking_id, "sent": sent}
