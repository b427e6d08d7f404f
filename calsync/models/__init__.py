# calsync/models/__init__.py
from .base import Base
from .calendar_integration import CalendarIntegration
from .booking import Booking
from .calendar_event import CalendarEvent
from .calendar_sync_job import CalendarSyncJob
from .booking_sync_status import BookingSyncStatus
from .pending_cleanup import PendingCleanup
from .conflict_review import ConflictReview

__all__ = [
    "Base",
    "CalendarIntegration",
    "Booking",
    "CalendarEvent",
    "CalendarSyncJob",
    "BookingSyncStatus",
    "PendingCleanup",
    "ConflictReview",
]
