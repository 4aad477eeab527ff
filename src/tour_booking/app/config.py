"""Application configuration via Pydantic Settings."""

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings

# Resolve .env from the project root regardless of CWD
_ENV_FILE = Path(__file__).resolve().parents[3] / ".env"


class Settings(BaseSettings):
    """Central configuration loaded from environment variables / .env file."""

    # Database
    database_url: str = "sqlite+aiosqlite:///./tour_booking.db"

    # Auth / JWT
    jwt_secret_key: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiration_minutes: int = 1440

    # Internal scheduler endpoints (X-Internal-Token)
    internal_token: str = "change-me-internal"

    # Notifications (SendGrid)
    sendgrid_api_key: str = ""
    booking_alert_from: str = ""
    booking_alert_to: str = ""
    notification_timeout_seconds: float = 10.0

    # Meeting providers
    provider_timeout_seconds: float = 10.0

    # Reminder scheduler
    reminder_scheduler_enabled: bool = True
    reminder_interval_minutes: int = 60
    reminder_lead_hours: int = 24
    reminder_band_minutes: int = 60

    # Admin overrides on other users' bookings
    admin_can_cancel_any_booking: bool = True
    admin_can_reschedule_any_booking: bool = True

    # CORS / Frontend
    cors_origins: str = "http://localhost:3000"
    frontend_url: str = "https://3bsolution.com"

    # General
    debug: bool = True

    model_config = {"env_file": str(_ENV_FILE), "env_file_encoding": "utf-8", "extra": "ignore"}

    @model_validator(mode="after")
    def _band_covers_interval(self) -> "Settings":
        # Band narrower than the tick period leaves gaps between ticks
        if self.reminder_band_minutes < self.reminder_interval_minutes:
            raise ValueError(
                "reminder_band_minutes must be >= reminder_interval_minutes "
                f"({self.reminder_band_minutes} < {self.reminder_interval_minutes})"
            )
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list.

        In debug mode, returns ["*"] to allow any origin.
        """
        if self.debug:
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return cached Settings instance."""
    return Settings()
