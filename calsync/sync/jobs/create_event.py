"""CreateCalendarEvent: push a booking to the external calendar"""
import logging

from calsync.models import BookingSyncStatus, CalendarEvent
from calsync.models.booking import TERMINAL_STATUSES
from calsync.services.integration_service import record_failure, reset_errors
from calsync.sync import retry_policy
from calsync.sync.concurrency import booking_create_key
from calsync.sync.conflicts import ConflictDetector, annotate_conflict
from calsync.sync.errors import ConflictDetected, ProviderError, SkipJob, TerminalSyncError
from calsync.sync.jobs.base import CalendarJob, JobResult, JobState, register_job, _uuid
from calsync.sync.jobs.booking_checks import is_critical, validate_booking
from calsync.sync.retry_policy import JobKind

logger = logging.getLogger(__name__)


@register_job
class CreateCalendarEvent(CalendarJob):
    kind = JobKind.CREATE

    def __init__(self, integration_id, booking_id, options=None, **kwargs):
        super().__init__(integration_id, options, **kwargs)
        self.booking_id = str(booking_id)

    def params(self):
        return {**super().params(), "booking_id": self.booking_id}

    def unique_key(self):
        return f"create_calendar_event_{self.integration_id}_{self.booking_id}"

    def concurrency_key(self):
        return booking_create_key(self.booking_id)

    def tags(self):
        return super().tags() + [f"booking:{self.booking_id}"]

    def display_name(self):
        return f"CreateCalendarEvent[{self.integration_id}/{self.booking_id}]"

    def determine_urgency(self, db, now):
        booking = self.load_booking(db, self.booking_id)
        return retry_policy.determine_urgency(booking.scheduled_at if booking else None, now)

    def handle(self, db, ctx):
        self.transition(JobState.VALIDATING)
        integration = self.load_integration(db)
        if not integration.is_active or not integration.sync_bookings:
            raise SkipJob(f"booking sync disabled for integration {integration.id}")

        booking = self.load_booking(db, self.booking_id)
        if booking is None:
            raise SkipJob(f"booking {self.booking_id} no longer exists")

        now = ctx.clock()
        validate_booking(booking, now, past_grace_minutes=ctx.settings.BOOKING_PAST_GRACE_MINUTES)

        existing = (
            db.query(CalendarEvent)
            .filter_by(calendar_integration_id=integration.id, booking_id=booking.id)
            .first()
        )
        if existing is not None:
            raise SkipJob(f"booking {booking.id} already synced as {existing.external_event_id}")

        if self.options.get("check_conflicts", True) and integration.auto_block_external_events:
            self.transition(JobState.CONFLICT_CHECK)
            conflicts = ConflictDetector(db).detect_for_booking(booking, integration)
            if conflicts:
                logger.warning(
                    f"⚠️ Booking {booking.id} overlaps {len(conflicts)} external event(s) on integration {integration.id}"
                )
                if self.options.get("strict_conflicts", False):
                    raise ConflictDetected(conflicts)

        adapter = ctx.registry.get(integration.provider)
        external_id = self.call_provider(ctx, integration, adapter.create_event, integration, booking)
        if not external_id:
            raise ProviderError(f"{integration.provider} returned no event id", provider=integration.provider)

        self.transition(JobState.UPDATING_LOCAL_STATE)
        db.add(CalendarEvent(
            calendar_integration_id=integration.id,
            booking_id=booking.id,
            external_event_id=external_id,
            title=integration.render_event_title(booking),
            starts_at=booking.scheduled_at,
            ends_at=booking.end_time,
            is_all_day=False,
            blocks_booking=True,
            synced_at=now,
        ))

        status = db.query(BookingSyncStatus).filter_by(booking_id=booking.id).first()
        if status is not None and status.calendar_sync_failed:
            status.calendar_sync_failed = False
            status.calendar_sync_error = None
            status.calendar_sync_failed_at = None

        reset_errors(integration, now)
        logger.info(f"✅ Booking {booking.id} synced to {integration.provider} as {external_id}")
        return JobResult(data={"external_event_id": external_id})

    def should_retry(self, error, db, ctx):
        if isinstance(error, TerminalSyncError):
            return False
        booking = self.load_booking(db, self.booking_id)
        if booking is not None and booking.status in TERMINAL_STATUSES:
            logger.info(f"Not retrying {self.display_name()}: booking is {booking.status}")
            return False
        return not retry_policy.is_terminal_error(self.kind, error)

    def on_error(self, error, db, ctx):
        integration = self.load_integration(db)

        if retry_policy.is_token_error(error):
            self.refresh_inline(integration, ctx)

        if retry_policy.is_rate_limit_error(error):
            return self.rate_limit_release(ctx)

        if isinstance(error, ConflictDetected):
            for conflict in error.conflicts:
                annotate_conflict(db, conflict, integration.id, ctx.clock())
        return None

    def failed(self, error, db, ctx):
        integration = self.load_integration(db)
        record_failure(integration, error, ctx.settings.SYNC_FAILURE_THRESHOLD, ctx.notifier, ctx.clock())

        booking = self.load_booking(db, self.booking_id)
        if booking is not None and is_critical(booking, ctx.settings.CRITICAL_BOOKING_AMOUNT, ctx.clock()):
            status = BookingSyncStatus.for_booking(db, _uuid(self.booking_id), integration.id)
            status.calendar_sync_failed = True
            status.calendar_sync_error = str(error)
            status.calendar_sync_failed_at = ctx.clock()

        if self.options.get("notify_failure", True):
            ctx.notifier.notify("sync_failure", integration, booking_id=self.booking_id, error=str(error))
