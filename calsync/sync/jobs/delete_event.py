"""DeleteCalendarEvent: remove an external event and its local mirror"""
import logging

from calsync.models import BookingSyncStatus, CalendarEvent, PendingCleanup
from calsync.services.integration_service import record_failure
from calsync.sync import retry_policy
from calsync.sync.concurrency import event_key
from calsync.sync.errors import ProviderError, ReleaseJob, SkipJob
from calsync.sync.jobs.base import CalendarJob, JobResult, JobState, Resolved, register_job, _uuid
from calsync.sync.retry_policy import JobKind

logger = logging.getLogger(__name__)


@register_job
class DeleteCalendarEvent(CalendarJob):
    kind = JobKind.DELETE

    def __init__(self, integration_id, external_event_id, booking_id=None, options=None, **kwargs):
        super().__init__(integration_id, options, **kwargs)
        self.external_event_id = external_event_id
        self.booking_id = str(booking_id) if booking_id else None

    def params(self):
        return {
            **super().params(),
            "external_event_id": self.external_event_id,
            "booking_id": self.booking_id,
        }

    def unique_key(self):
        return f"delete_calendar_event_{self.integration_id}_{self.external_event_id}"

    def concurrency_key(self):
        return event_key(self.integration_id, self.external_event_id)

    def tags(self):
        tags = super().tags() + [f"external_event:{self.external_event_id}"]
        if self.booking_id:
            tags.append(f"booking:{self.booking_id}")
        return tags

    def display_name(self):
        return f"DeleteCalendarEvent[{self.integration_id}/{self.external_event_id}]"

    def determine_urgency(self, db, now):
        booking = self.load_booking(db, self.booking_id)
        if booking is None:
            return retry_policy.Urgency.NORMAL
        return retry_policy.determine_urgency(booking.scheduled_at, now)

    def handle(self, db, ctx):
        self.transition(JobState.VALIDATING)
        # Runs for inactive integrations too; the remote event still has to go
        integration = self.load_integration(db)
        adapter = ctx.registry.get(integration.provider)

        already_gone = False
        try:
            deleted = self.call_provider(ctx, integration, adapter.delete_event, integration, self.external_event_id)
        except ReleaseJob:
            raise
        except Exception as e:
            if not retry_policy.is_not_found_error(e):
                raise
            logger.info(f"{self.display_name()}: remote event already gone ({e})")
            deleted, already_gone = True, True

        if not deleted:
            try:
                still_there = self.call_provider(
                    ctx, integration, adapter.event_exists, integration, self.external_event_id
                )
            except ReleaseJob:
                raise
            except Exception as e:
                logger.warning(f"Could not confirm deletion of {self.external_event_id}: {e}")
                still_there = True
            if still_there:
                raise ProviderError(
                    f"{integration.provider} failed to delete event {self.external_event_id}",
                    provider=integration.provider,
                )
            already_gone = True

        self.transition(JobState.UPDATING_LOCAL_STATE)
        removed = self._cleanup(db, ctx, integration)
        if integration.is_active:
            integration.last_sync_at = ctx.clock()
        logger.info(f"🗑️ {self.display_name()} done, {removed} mirror row(s) removed")
        return JobResult(data={"already_deleted": already_gone, "mirrors_removed": removed})

    def _remove_mirror(self, db, integration_id) -> int:
        return (
            db.query(CalendarEvent)
            .filter_by(calendar_integration_id=integration_id, external_event_id=self.external_event_id)
            .delete(synchronize_session="fetch")
        )

    def _cleanup(self, db, ctx, integration) -> int:
        now = ctx.clock()
        removed = self._remove_mirror(db, integration.id)

        if self.booking_id and self.load_booking(db, self.booking_id) is not None:
            status = BookingSyncStatus.for_booking(db, _uuid(self.booking_id), integration.id)
            status.calendar_event_deleted = True
            status.calendar_event_deleted_at = now
            status.calendar_deletion_failed = False
            status.calendar_deletion_error = None
            status.calendar_deletion_failed_at = None
            status.calendar_sync_failed = False
            status.calendar_update_failed = False

        for marker in self._pending_markers(db, integration.id):
            marker.status = "done"
            marker.last_attempt_at = now
        return removed

    def _pending_markers(self, db, integration_id):
        return (
            db.query(PendingCleanup)
            .filter_by(
                calendar_integration_id=integration_id,
                external_event_id=self.external_event_id,
                status="pending",
            )
            .all()
        )

    def should_retry(self, error, db, ctx):
        if retry_policy.is_not_found_error(error):
            return False
        return super().should_retry(error, db, ctx)

    def on_error(self, error, db, ctx):
        integration = self.load_integration(db)

        if retry_policy.is_not_found_error(error):
            removed = self._cleanup(db, ctx, integration)
            return Resolved("completed", {"already_deleted": True, "mirrors_removed": removed})

        if retry_policy.is_token_error(error):
            self.refresh_inline(integration, ctx)

        if retry_policy.is_rate_limit_error(error):
            return self.rate_limit_release(ctx)
        return None

    def failed(self, error, db, ctx):
        try:
            integration = self.load_integration(db)
        except SkipJob:
            return
        now = ctx.clock()
        # Counted, but a failed deletion never trips the breaker
        record_failure(integration, error, threshold=None, now=now)

        self._remove_mirror(db, integration.id)
        if not self._pending_markers(db, integration.id):
            db.add(PendingCleanup(
                calendar_integration_id=integration.id,
                external_event_id=self.external_event_id,
                booking_id=_uuid(self.booking_id),
                reason=str(error)[:2000],
            ))

        if self.booking_id and self.load_booking(db, self.booking_id) is not None:
            status = BookingSyncStatus.for_booking(db, _uuid(self.booking_id), integration.id)
            status.calendar_deletion_failed = True
            status.calendar_deletion_error = str(error)
            status.calendar_deletion_failed_at = now

        if self.options.get("notify_failure", True):
            ctx.notifier.notify(
                "deletion_failure", integration,
                external_event_id=self.external_event_id, booking_id=self.booking_id, error=str(error),
            )
