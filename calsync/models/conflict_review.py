# calsync/models/conflict_review.py
from sqlalchemy import Column, String, Integer, JSON, ForeignKey, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
import uuid


class ConflictReview(Base):
    """Conflict waiting for a human decision (manual resolution strategy)"""

    __tablename__ = "calendar_conflict_reviews"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_integration_id = Column(Uuid, ForeignKey("calendar_integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    booking_id = Column(Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True)
    external_event_id = Column(String(255), nullable=False)

    severity = Column(String(10), nullable=False)  # low, medium, high
    overlap_minutes = Column(Integer, nullable=False)
    resolution_options = Column(JSON, default=list)
    status = Column(String(20), default="open", nullable=False)  # open, resolved

    created_at = Column(UTCDateTime, default=utcnow)
    resolved_at = Column(UTCDateTime)
