# calsync/services/booking_service.py
import logging
from typing import Optional

from calsync.models.base import utcnow

logger = logging.getLogger(__name__)


class BookingService:
    """The booking operations the sync engine is allowed to trigger"""

    def cancel_booking(self, booking, reason: str, auto_cancelled: bool = False,
                       conflict_event_id: Optional[str] = None):
        if booking.status in ("cancelled", "completed", "no_show"):
            raise ValueError(f"Booking {booking.id} cannot be cancelled from status {booking.status}")

        booking.status = "cancelled"
        booking.cancelled_at = utcnow()
        booking.cancellation_reason = reason
        booking.auto_cancelled = auto_cancelled
        booking.conflict_event_id = conflict_event_id
        logger.info(f"Booking {booking.id} cancelled: {reason}")
        return booking
