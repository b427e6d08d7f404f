"""UpdateCalendarEvent: push booking changes to an existing external event"""
import logging

from calsync.models import BookingSyncStatus, CalendarEvent
from calsync.models.booking import ACTIVE_STATUSES
from calsync.services.integration_service import record_failure, reset_errors
from calsync.sync import retry_policy
from calsync.sync.concurrency import event_key
from calsync.sync.conflicts import ConflictDetector, annotate_conflict
from calsync.sync.errors import ConflictDetected, ProviderError, ReleaseJob, SkipJob, TerminalSyncError
from calsync.sync.jobs.base import CalendarJob, JobResult, JobState, Resolved, register_job, _uuid
from calsync.sync.jobs.booking_checks import validate_booking
from calsync.sync.retry_policy import JobKind, Urgency

logger = logging.getLogger(__name__)

TIME_FIELDS = ("scheduled_at", "ends_at", "duration_minutes")
UPDATABLE_STATUSES = ACTIVE_STATUSES + ("cancelled",)


@register_job
class UpdateCalendarEvent(CalendarJob):
    kind = JobKind.UPDATE

    def __init__(self, integration_id, booking_id, external_event_id, changes=None, options=None, **kwargs):
        super().__init__(integration_id, options, **kwargs)
        self.booking_id = str(booking_id)
        self.external_event_id = external_event_id
        self.changes = dict(changes or {})

    def params(self):
        return {
            **super().params(),
            "booking_id": self.booking_id,
            "external_event_id": self.external_event_id,
            "changes": self.changes,
        }

    def unique_key(self):
        return f"update_calendar_event_{self.integration_id}_{self.external_event_id}"

    def concurrency_key(self):
        return event_key(self.integration_id, self.external_event_id)

    def tags(self):
        return super().tags() + [f"booking:{self.booking_id}", f"external_event:{self.external_event_id}"]

    def display_name(self):
        return f"UpdateCalendarEvent[{self.integration_id}/{self.external_event_id}]"

    @property
    def has_time_changes(self) -> bool:
        return any(name in self.changes for name in TIME_FIELDS)

    def determine_urgency(self, db, now):
        booking = self.load_booking(db, self.booking_id)
        scheduled_at = booking.scheduled_at if booking else None
        if self.has_time_changes and scheduled_at is not None:
            if int((scheduled_at - now).total_seconds() / 3600) <= 4:
                return Urgency.URGENT
        return retry_policy.determine_urgency(scheduled_at, now)

    def _mirror(self, db, integration_id):
        return (
            db.query(CalendarEvent)
            .filter_by(calendar_integration_id=integration_id, external_event_id=self.external_event_id)
            .first()
        )

    def _cascade_to_create(self, db, ctx, integration_id, reason: str):
        """The remote event is gone: drop the stale mirror and create a fresh event"""
        from calsync.sync.jobs.create_event import CreateCalendarEvent

        self.transition(JobState.UPDATING_LOCAL_STATE)
        mirror = self._mirror(db, integration_id)
        if mirror is not None:
            db.delete(mirror)
        db.flush()

        create = CreateCalendarEvent(integration_id, self.booking_id, options=self.options)
        self.dispatch(ctx, create)
        logger.info(f"↪️ {self.display_name()}: {reason}, dispatched {create.display_name()}")
        return {"cascaded_to": create.kind.value, "reason": reason}

    def handle(self, db, ctx):
        self.transition(JobState.VALIDATING)
        integration = self.load_integration(db)
        if not integration.is_active or not integration.sync_bookings:
            raise SkipJob(f"booking sync disabled for integration {integration.id}")

        booking = self.load_booking(db, self.booking_id)
        if booking is None:
            raise SkipJob(f"booking {self.booking_id} no longer exists")

        now = ctx.clock()
        validate_booking(
            booking, now,
            allowed_statuses=UPDATABLE_STATUSES,
            require_fields=booking.status != "cancelled",
        )

        adapter = ctx.registry.get(integration.provider)
        try:
            exists = self.call_provider(ctx, integration, adapter.event_exists, integration, self.external_event_id)
        except ReleaseJob:
            raise
        except Exception as e:
            logger.warning(f"Could not verify {self.external_event_id} exists, assuming it does: {e}")
            exists = True
        if not exists:
            data = self._cascade_to_create(db, ctx, integration.id, "remote event missing")
            return JobResult(status="cascaded", data=data)

        if (self.has_time_changes and self.options.get("check_conflicts", True)
                and integration.auto_block_external_events):
            self.transition(JobState.CONFLICT_CHECK)
            conflicts = ConflictDetector(db).detect_for_booking(booking, integration)
            if conflicts:
                logger.warning(f"⚠️ Rescheduled booking {booking.id} overlaps {len(conflicts)} external event(s)")
                if self.options.get("strict_conflicts", False):
                    raise ConflictDetected(conflicts)

        updated = self.call_provider(
            ctx, integration, adapter.update_event, integration, booking, self.external_event_id
        )
        if not updated:
            raise ProviderError(
                f"{integration.provider} did not update event {self.external_event_id}",
                provider=integration.provider,
            )

        self.transition(JobState.UPDATING_LOCAL_STATE)
        mirror = self._mirror(db, integration.id)
        if mirror is None:
            mirror = CalendarEvent(
                calendar_integration_id=integration.id,
                external_event_id=self.external_event_id,
                booking_id=booking.id,
            )
            db.add(mirror)
        mirror.title = integration.render_event_title(booking)
        mirror.starts_at = booking.scheduled_at
        mirror.ends_at = booking.end_time
        mirror.synced_at = now
        mirror.last_updated_externally = now

        status = db.query(BookingSyncStatus).filter_by(booking_id=booking.id).first()
        if status is not None and status.calendar_update_failed:
            status.calendar_update_failed = False
            status.calendar_update_error = None
            status.calendar_update_failed_at = None
            status.failed_changes = None

        reset_errors(integration, now)
        logger.info(f"✅ Updated {integration.provider} event {self.external_event_id} for booking {booking.id}")
        return JobResult(data={"external_event_id": self.external_event_id, "changes": sorted(self.changes)})

    def should_retry(self, error, db, ctx):
        if isinstance(error, TerminalSyncError):
            return False
        booking = self.load_booking(db, self.booking_id)
        if booking is not None and booking.status not in ACTIVE_STATUSES:
            return False
        if retry_policy.message_contains(error, "not found", "deleted"):
            return False
        return not retry_policy.is_terminal_error(self.kind, error)

    def on_error(self, error, db, ctx):
        integration = self.load_integration(db)

        if retry_policy.message_contains(error, "not found", "deleted"):
            data = self._cascade_to_create(db, ctx, integration.id, "provider reported the event missing")
            return Resolved("cascaded", data)

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

        mirror = self._mirror(db, integration.id)
        if mirror is not None:
            mirror.synced_at = None

        if self.load_booking(db, self.booking_id) is not None:
            status = BookingSyncStatus.for_booking(db, _uuid(self.booking_id), integration.id)
            status.calendar_update_failed = True
            status.calendar_update_error = str(error)
            status.calendar_update_failed_at = ctx.clock()
            status.failed_changes = {key: str(value) for key, value in self.changes.items()}

        if self.options.get("notify_failure", True):
            ctx.notifier.notify(
                "update_failure", integration,
                booking_id=self.booking_id, external_event_id=self.external_event_id, error=str(error),
            )
