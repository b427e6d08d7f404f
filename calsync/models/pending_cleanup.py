# calsync/models/pending_cleanup.py
from sqlalchemy import Column, String, Integer, Text, ForeignKey, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
import uuid


class PendingCleanup(Base):
    """A remote deletion still owed after DeleteCalendarEvent gave up"""

    __tablename__ = "calendar_pending_cleanups"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_integration_id = Column(Uuid, ForeignKey("calendar_integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    external_event_id = Column(String(255), nullable=False)
    booking_id = Column(Uuid)
    reason = Column(Text)
    attempts = Column(Integer, default=0, nullable=False)
    status = Column(String(20), default="pending", nullable=False, index=True)  # pending, done, abandoned

    last_attempt_at = Column(UTCDateTime)
    created_at = Column(UTCDateTime, default=utcnow)
