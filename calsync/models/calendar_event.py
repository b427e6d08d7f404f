# calsync/models/calendar_event.py
from sqlalchemy import Column, String, Boolean, Text, ForeignKey, UniqueConstraint, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
import uuid


class CalendarEvent(Base):
    """Local mirror of one external calendar event"""

    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("calendar_integration_id", "external_event_id", name="uq_calendar_event_external"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_integration_id = Column(Uuid, ForeignKey("calendar_integrations.id", ondelete="CASCADE"), nullable=False)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), index=True)  # set when pushed from a booking
    external_event_id = Column(String(255), nullable=False)

    title = Column(String(500))
    description = Column(Text)
    starts_at = Column(UTCDateTime, nullable=False)
    ends_at = Column(UTCDateTime, nullable=False)
    is_all_day = Column(Boolean, default=False, nullable=False)
    blocks_booking = Column(Boolean, default=True, nullable=False)

    synced_at = Column(UTCDateTime)  # null = out of sync with the provider
    last_updated_externally = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<CalendarEvent {self.external_event_id} {self.starts_at}-{self.ends_at}>"
