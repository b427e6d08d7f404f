# calsync/models/booking_sync_status.py
from sqlalchemy import Column, String, Boolean, Text, JSON, ForeignKey, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
import uuid


class BookingSyncStatus(Base):
    """Sync and conflict annotations for a booking, owned by the sync engine"""

    __tablename__ = "booking_sync_statuses"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, unique=True)
    calendar_integration_id = Column(Uuid, ForeignKey("calendar_integrations.id", ondelete="SET NULL"))

    # CreateCalendarEvent
    calendar_sync_failed = Column(Boolean, default=False, nullable=False)
    calendar_sync_error = Column(Text)
    calendar_sync_failed_at = Column(UTCDateTime)

    # UpdateCalendarEvent
    calendar_update_failed = Column(Boolean, default=False, nullable=False)
    calendar_update_error = Column(Text)
    calendar_update_failed_at = Column(UTCDateTime)
    failed_changes = Column(JSON)

    # DeleteCalendarEvent
    calendar_deletion_failed = Column(Boolean, default=False, nullable=False)
    calendar_deletion_error = Column(Text)
    calendar_deletion_failed_at = Column(UTCDateTime)
    calendar_event_deleted = Column(Boolean, default=False, nullable=False)
    calendar_event_deleted_at = Column(UTCDateTime)

    # Conflicts
    conflict_detected = Column(Boolean, default=False, nullable=False)
    conflict_details = Column(JSON)
    conflict_detected_at = Column(UTCDateTime)
    conflict_event_id = Column(String(255))

    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @classmethod
    def for_booking(cls, db, booking_id, integration_id=None):
        """Fetch or attach the status row for a booking"""
        status = db.query(cls).filter_by(booking_id=booking_id).first()
        if status is None:
            status = cls(booking_id=booking_id, calendar_integration_id=integration_id)
            db.add(status)
            # Visible to the next lookup in this session even without autoflush
            db.flush()
        elif integration_id is not None:
            status.calendar_integration_id = integration_id
        return status
