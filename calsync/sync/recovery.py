"""
Recovery sweep for remote deletions that DeleteCalendarEvent could not finish
"""
import logging
from datetime import datetime

from calsync.models import CalendarIntegration, PendingCleanup
from calsync.sync.jobs.delete_event import DeleteCalendarEvent

logger = logging.getLogger(__name__)


def sweep_pending_cleanups(db, dispatcher, now: datetime, max_attempts: int = 5) -> dict:
    """Re-dispatch deletions for every pending cleanup marker.

    Markers whose integration is gone, or that already used up
    ``max_attempts`` sweeps, are abandoned. A successful delete marks its
    marker done from inside the job.
    """
    markers = (
        db.query(PendingCleanup)
        .filter(PendingCleanup.status == "pending")
        .order_by(PendingCleanup.created_at)
        .all()
    )

    dispatched, abandoned = 0, 0
    for marker in markers:
        integration = db.get(CalendarIntegration, marker.calendar_integration_id)
        if integration is None or marker.attempts >= max_attempts:
            marker.status = "abandoned"
            marker.last_attempt_at = now
            abandoned += 1
            logger.warning(
                f"🗑️ Abandoning cleanup of event {marker.external_event_id} "
                f"after {marker.attempts} attempt(s)"
            )
            continue

        job = DeleteCalendarEvent(
            marker.calendar_integration_id,
            marker.external_event_id,
            booking_id=marker.booking_id,
            options={"notify_failure": False},
        )
        if dispatcher.dispatch(job):
            marker.attempts += 1
            marker.last_attempt_at = now
            dispatched += 1

    db.commit()
    logger.info(f"🧹 Cleanup sweep: {dispatched} deletions dispatched, {abandoned} abandoned")
    return {"dispatched": dispatched, "abandoned": abandoned}
