# calsync/models/booking.py
from datetime import timedelta

from sqlalchemy import Column, String, Boolean, Integer, Text, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
import uuid

ACTIVE_STATUSES = ("pending", "confirmed", "in_progress")
TERMINAL_STATUSES = ("cancelled", "completed", "no_show")


class Booking(Base):
    """Internal appointment. The booking subsystem owns its lifecycle."""

    __tablename__ = "bookings"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    service_id = Column(Uuid, index=True)
    service_name = Column(String(200))
    booking_reference = Column(String(50), unique=True)

    client_name = Column(String(200))
    client_email = Column(String(255))
    notes = Column(Text)

    scheduled_at = Column(UTCDateTime, index=True)
    ends_at = Column(UTCDateTime)
    duration_minutes = Column(Integer)

    # pending, confirmed, in_progress, completed, cancelled, no_show
    status = Column(String(20), default="pending", nullable=False)
    total_amount = Column(Integer, default=0)  # minor units
    requires_consultation = Column(Boolean, default=False)
    urgency_level = Column(String(20))  # set by intake: urgent, high, normal

    cancelled_at = Column(UTCDateTime)
    cancellation_reason = Column(Text)
    auto_cancelled = Column(Boolean, default=False)
    conflict_event_id = Column(String(255))

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def end_time(self):
        if self.ends_at is not None:
            return self.ends_at
        if self.scheduled_at is None:
            return None
        return self.scheduled_at + timedelta(minutes=self.duration_minutes or 60)

    def __repr__(self):
        return f"<Booking {self.booking_reference or self.id} {self.status}>"
