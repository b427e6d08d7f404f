# calsync/sync/jobs/booking_checks.py
from datetime import datetime, timedelta
from typing import Iterable

from calsync.models.booking import ACTIVE_STATUSES
from calsync.sync.errors import BookingValidationError
from calsync.sync.retry_policy import Urgency, determine_urgency

REQUIRED_FIELDS = ("client_name", "scheduled_at")


def validate_booking(booking, now: datetime, allowed_statuses: Iterable[str] = ACTIVE_STATUSES,
                     past_grace_minutes=None, require_fields: bool = True):
    allowed = tuple(allowed_statuses)
    if booking.status not in allowed:
        raise BookingValidationError(
            f"Booking {booking.id} has status {booking.status}, expected one of {', '.join(allowed)}"
        )

    if require_fields:
        missing = [name for name in REQUIRED_FIELDS if not getattr(booking, name)]
        if missing:
            raise BookingValidationError(f"Booking {booking.id} is missing {', '.join(missing)}")

    if past_grace_minutes is not None and booking.scheduled_at is not None:
        if booking.scheduled_at < now - timedelta(minutes=past_grace_minutes):
            raise BookingValidationError(
                f"Booking {booking.id} started more than {past_grace_minutes} minutes ago"
            )


def is_critical(booking, amount_threshold: int, now: datetime) -> bool:
    """Bookings whose sync failures must be visible on the booking itself.

    Urgency comes from the time left before the booking, not from the stored intake level.
    """
    urgency = determine_urgency(booking.scheduled_at, now)
    return bool(
        (booking.total_amount or 0) > amount_threshold
        or booking.requires_consultation
        or urgency in (Urgency.URGENT, Urgency.HIGH)
    )
