"""FastAPI application entry point for the tour booking API."""

import asyncio
import logging
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tour_booking.app.config import get_settings
from tour_booking.app.routes.bookings import get_dispatcher
from tour_booking.app.routes.scheduler import build_scheduler
from tour_booking.infra.database import async_session, init_db
from tour_booking.services.reminder_scheduler import SchedulerState

logger = logging.getLogger(__name__)


async def reminder_loop(state: SchedulerState, interval_minutes: int):
    """Run a reminder tick every *interval_minutes*."""
    while True:
        try:
            async with async_session() as db:
                results = await build_scheduler(db, get_dispatcher(), state=state).tick()
                if results["sent"] or results["missed"]:
                    logger.info("Reminder loop: %s", results)
        except Exception as e:
            logger.error("Reminder loop error: %s", e)
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: initialize database and start the reminder loop."""
    await init_db()

    settings = get_settings()
    app.state.reminder_state = SchedulerState()
    task = None
    if settings.reminder_scheduler_enabled:
        task = asyncio.create_task(
            reminder_loop(app.state.reminder_state, settings.reminder_interval_minutes)
        )
    yield
    if task is not None:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task


settings = get_settings()

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.debug else logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    datefmt="%H:%M:%S",
)

app = FastAPI(
    title="Tour Booking API",
    lifespan=lifespan,
    debug=settings.debug,
)

# CORS middleware: allow all origins in debug mode
_cors_origins = settings.cors_origins_list
app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins,
    allow_credentials=("*" not in _cors_origins),
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Route includes
# ---------------------------------------------------------------------------
from tour_booking.app.routes.auth import router as auth_router
from tour_booking.app.routes.bookings import router as bookings_router, agents_router, feedback_router
from tour_booking.app.routes.scheduler import router as scheduler_router

app.include_router(auth_router)
app.include_router(bookings_router)
app.include_router(agents_router)
app.include_router(feedback_router)
app.include_router(scheduler_router)


@app.get("/health", tags=["health"])
async def health_check():
    """Return service health status."""
    return {"status": "ok", "service": "tour-booking"}


def run() -> None:
    """Run the application with uvicorn (used by project.scripts entry point)."""
    uvicorn.run(
        "tour_booking.app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )


if __name__ == "__main__":
    run()
