"""
Conflict detection between external events and bookings, and the
strategies that resolve them
"""
import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from calsync.models import Booking, BookingSyncStatus, CalendarEvent, ConflictReview
from calsync.models.base import utcnow
from calsync.schemas.calendar_events import (
    CanonicalEvent,
    Conflict,
    ConflictSeverity,
    ResolutionStrategy,
)

logger = logging.getLogger(__name__)

AUTO_CANCEL_REASON = "Calendar conflict detected via webhook"


def overlap_minutes(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> int:
    seconds = (min(end_a, end_b) - max(start_a, start_b)).total_seconds()
    return max(int(seconds // 60), 0)


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Strict overlap; touching windows do not conflict"""
    return start_a < end_b and end_a > start_b


def classify_severity(minutes: int) -> ConflictSeverity:
    if minutes >= 60:
        return ConflictSeverity.HIGH
    if minutes >= 30:
        return ConflictSeverity.MEDIUM
    return ConflictSeverity.LOW


def build_conflict(booking: Booking, external_event_id: str, event_start: datetime,
                   event_end: datetime, event_title: Optional[str] = None) -> Conflict:
    minutes = overlap_minutes(booking.scheduled_at, booking.end_time, event_start, event_end)
    return Conflict(
        booking_id=str(booking.id),
        booking_reference=booking.booking_reference,
        external_event_id=external_event_id,
        event_title=event_title,
        severity=classify_severity(minutes),
        overlap_minutes=minutes,
        booking_start=booking.scheduled_at,
        booking_end=booking.end_time,
        event_start=event_start,
        event_end=event_end,
    )


class ConflictDetector:
    """Finds overlaps between canonical events and active bookings"""

    def __init__(self, db: Session):
        self.db = db

    def _scoped_bookings(self, integration):
        query = self.db.query(Booking).filter(Booking.status != "cancelled")
        if integration.service_id is not None:
            return query.filter(Booking.service_id == integration.service_id)
        return query.filter(Booking.user_id == integration.user_id)

    def detect(self, event: CanonicalEvent, integration) -> List[Conflict]:
        """Bookings in the integration's scope that overlap ``event``"""
        if not integration.auto_block_external_events or not event.blocks_booking:
            return []

        candidates = (
            self._scoped_bookings(integration)
            .filter(Booking.scheduled_at < event.ends_at)
            .filter(or_(Booking.ends_at.is_(None), Booking.ends_at > event.starts_at))
            .all()
        )

        conflicts = [
            build_conflict(booking, event.external_id, event.starts_at, event.ends_at, event.title)
            for booking in candidates
            if booking.scheduled_at is not None
            and overlaps(booking.scheduled_at, booking.end_time, event.starts_at, event.ends_at)
        ]
        if conflicts:
            logger.warning(
                f"⚠️ Event {event.external_id} conflicts with {len(conflicts)} booking(s) "
                f"on integration {integration.id}"
            )
        return conflicts

    def detect_for_booking(self, booking: Booking, integration,
                           start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Conflict]:
        """Blocking external events that overlap a booking's window"""
        if not integration.auto_block_external_events:
            return []
        start = start or booking.scheduled_at
        end = end or booking.end_time

        events = (
            self.db.query(CalendarEvent)
            .filter(CalendarEvent.calendar_integration_id == integration.id)
            .filter(CalendarEvent.blocks_booking.is_(True))
            .filter(or_(CalendarEvent.booking_id.is_(None), CalendarEvent.booking_id != booking.id))
            .filter(CalendarEvent.starts_at < end)
            .filter(CalendarEvent.ends_at > start)
            .all()
        )
        return [
            build_conflict(booking, event.external_event_id, event.starts_at, event.ends_at, event.title)
            for event in events
        ]

    def resolve_for_removed_event(self, integration, external_event_id: str) -> List[str]:
        """Clear conflict flags that pointed at an event which no longer exists"""
        statuses = (
            self.db.query(BookingSyncStatus)
            .filter(BookingSyncStatus.conflict_event_id == external_event_id)
            .filter(BookingSyncStatus.conflict_detected.is_(True))
            .all()
        )
        resolved = []
        for status in statuses:
            status.conflict_detected = False
            status.conflict_details = None
            status.conflict_event_id = None
            resolved.append(str(status.booking_id))

        now = utcnow()
        reviews = (
            self.db.query(ConflictReview)
            .filter_by(calendar_integration_id=integration.id, external_event_id=external_event_id, status="open")
            .all()
        )
        for review in reviews:
            review.status = "resolved"
            review.resolved_at = now

        if resolved:
            logger.info(f"✅ Removal of {external_event_id} resolved conflicts for bookings {resolved}")
        return resolved


def annotate_conflict(db: Session, conflict: Conflict, integration_id=None, now: Optional[datetime] = None):
    status = BookingSyncStatus.for_booking(db, _uuid(conflict.booking_id), integration_id)
    status.conflict_detected = True
    status.conflict_details = conflict.model_dump(mode="json")
    status.conflict_detected_at = now or utcnow()
    status.conflict_event_id = conflict.external_event_id
    return status


def _uuid(value):
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class ConflictResolver:
    """Applies the integration's conflict_resolution strategy"""

    def __init__(self, db: Session, booking_service, notifier, clock=utcnow):
        self.db = db
        self.booking_service = booking_service
        self.notifier = notifier
        self.clock = clock

    def resolve(self, conflict: Conflict, integration, strategy: Optional[str] = None) -> str:
        strategy = strategy or integration.conflict_resolution

        if strategy == ResolutionStrategy.CANCEL_BOOKING.value:
            return self._cancel_booking(conflict, integration)
        if strategy == ResolutionStrategy.IGNORE_CONFLICT.value:
            logger.info(f"Ignoring conflict between booking {conflict.booking_id} and {conflict.external_event_id}")
            return "ignored"
        if strategy == ResolutionStrategy.NOTIFY_ONLY.value:
            self.notifier.notify("conflict", integration, conflict=conflict.model_dump(mode="json"))
            return "notified"
        return self._flag_for_review(conflict, integration)

    def _cancel_booking(self, conflict: Conflict, integration) -> str:
        booking = self.db.get(Booking, _uuid(conflict.booking_id))
        if booking is None:
            return "missing"
        try:
            self.booking_service.cancel_booking(
                booking,
                reason=AUTO_CANCEL_REASON,
                auto_cancelled=True,
                conflict_event_id=conflict.external_event_id,
            )
        except Exception as e:
            logger.error(f"❌ Auto-cancel of booking {booking.id} failed: {e}")
            return "cancel_failed"
        logger.info(f"🚫 Booking {booking.id} auto-cancelled by event {conflict.external_event_id}")
        return "cancelled"

    def _flag_for_review(self, conflict: Conflict, integration) -> str:
        existing = (
            self.db.query(ConflictReview)
            .filter_by(
                booking_id=_uuid(conflict.booking_id),
                external_event_id=conflict.external_event_id,
                status="open",
            )
            .first()
        )
        if existing is None:
            self.db.add(ConflictReview(
                calendar_integration_id=integration.id,
                booking_id=_uuid(conflict.booking_id),
                external_event_id=conflict.external_event_id,
                severity=conflict.severity.value,
                overlap_minutes=conflict.overlap_minutes,
                resolution_options=conflict.resolution_options,
            ))
            self.db.flush()
        else:
            existing.severity = conflict.severity.value
            existing.overlap_minutes = conflict.overlap_minutes
        annotate_conflict(self.db, conflict, integration.id, self.clock())
        logger.info(f"📝 Conflict on booking {conflict.booking_id} queued for manual review")
        return "flagged"
