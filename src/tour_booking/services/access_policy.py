"""Who may act on a booking.

Owners may always reschedule, cancel, and complete their own bookings.
Acting on someone else's booking requires a named Capability; which roles
hold which capabilities is a deployment setting.
"""

from dataclasses import dataclass, field

from tour_booking.app.config import Settings, get_settings
from tour_booking.domain.enums import Capability, UserRole
from tour_booking.domain.errors import ForbiddenError

SYSTEM_ACTOR_ID = "system"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: str = UserRole.VISITOR.value
    capabilities: frozenset[Capability] = field(default_factory=frozenset)

    def can(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def owns(self, booking) -> bool:
        return booking.user_id == self.user_id


def capabilities_for_role(role: str, settings: Settings | None = None) -> frozenset[Capability]:
    settings = settings or get_settings()
    if role != UserRole.ADMIN.value:
        return frozenset()

    caps = {
        Capability.CONFIRM_BOOKING,
        Capability.COMPLETE_ANY_BOOKING,
        Capability.LIST_ALL_BOOKINGS,
        Capability.LIST_ALL_FEEDBACK,
    }
    if settings.admin_can_cancel_any_booking:
        caps.add(Capability.CANCEL_ANY_BOOKING)
    if settings.admin_can_reschedule_any_booking:
        caps.add(Capability.RESCHEDULE_ANY_BOOKING)
    return frozenset(caps)


def actor_for_user(user, settings: Settings | None = None) -> Actor:
    return Actor(
        user_id=user.id,
        role=user.role,
        capabilities=capabilities_for_role(user.role, settings),
    )


def require_owner_or(actor: Actor, booking, capability: Capability, action: str) -> None:
    """Raise ForbiddenError unless *actor* owns *booking* or holds *capability*."""
    if actor.owns(booking) or actor.can(capability):
        return
    raise ForbiddenError(f"Not authorized to {action} this booking")
