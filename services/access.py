"""Who may act on a booking."""
from services.errors import NotFoundError, PermissionDenied

MANAGER_ROLES = ("ADMIN",)


def is_store_manager(actor, store) -> bool:
    if actor is None or store is None:
        return False
    return store.owner_user_id == actor.id or actor.has_role(*MANAGER_ROLES)


def is_booking_owner(actor, booking) -> bool:
    return actor is not None and booking.user_id == actor.id


def ensure_can_view(actor, booking):
    # other people's bookings look like missing ones
    if not (is_booking_owner(actor, booking) or is_store_manager(actor, booking.store)):
        raise NotFoundError("Booking not found")


def ensure_owner_or_manager(actor, booking):
    if not (is_booking_owner(actor, booking) or is_store_manager(actor, booking.store)):
        raise PermissionDenied("You cannot modify this booking")


def ensure_manager(actor, booking):
    if not is_store_manager(actor, booking.store):
        raise PermissionDenied("Only the store's merchant can do this")
