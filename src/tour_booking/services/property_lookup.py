"""Property lookup used to title meetings and deep-link notifications."""

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tour_booking.domain.models import Property


@dataclass(frozen=True)
class PropertySummary:
    id: str
    title: str
    slug: str


async def get_property_summary(db: AsyncSession, property_id: str | None) -> PropertySummary | None:
    """Return title and slug for a property, or None if it does not resolve."""
    if not property_id:
        return None
    result = await db.execute(
        select(Property.id, Property.title, Property.slug).where(Property.id == property_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return PropertySummary(id=row.id, title=row.title, slug=row.slug)
