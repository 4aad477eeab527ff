"""Provider credential lookup backed by the site_settings table."""

import logging
from typing import Iterable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.domain.models import SiteSetting

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    async def get_many(self, keys: Iterable[str]) -> dict[str, str | None]:
        ...


class SiteSettingsCredentialStore:
    """Reads named credentials (ZOOM_CLIENT_ID, ...) from site_settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_many(self, keys: Iterable[str]) -> dict[str, str | None]:
        keys = list(keys)
        result = await self.db.execute(
            select(SiteSetting.key, SiteSetting.value).where(SiteSetting.key.in_(keys))
        )
        found = {row.key: row.value for row in result.all()}
        # Blank values count as unset
        return {key: (found.get(key) or None) for key in keys}


class StaticCredentialStore:
    """In-memory store, used for env-provided credentials and in tests."""

    def __init__(self, values: dict[str, str] | None = None):
        self._values = dict(values or {})

    async def get_many(self, keys: Iterable[str]) -> dict[str, str | None]:
        return {key: (self._values.get(key) or None) for key in keys}
