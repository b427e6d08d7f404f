"""SyncCalendarEvents: pull provider changes for one integration"""
import logging
from datetime import timedelta

from calsync.models import CalendarIntegration, CalendarSyncJob
from calsync.schemas.calendar_events import ChangeNotification
from calsync.services.integration_service import record_failure, reset_errors
from calsync.sync import retry_policy
from calsync.sync.changes import ChangeProcessor
from calsync.sync.errors import SkipJob
from calsync.sync.jobs.base import CalendarJob, JobResult, JobState, register_job, _uuid
from calsync.sync.jobs.process_webhook import changes_key
from calsync.sync.normalizer import change_type_for
from calsync.sync.retry_policy import JobKind, Urgency

logger = logging.getLogger(__name__)


@register_job
class SyncCalendarEvents(CalendarJob):
    kind = JobKind.SYNC

    def __init__(self, integration_id, options=None, **kwargs):
        super().__init__(integration_id, options, **kwargs)
        self._record_id = None

    def unique_key(self):
        return f"sync_calendar_events_{self.integration_id}"

    def concurrency_key(self):
        return changes_key(self.integration_id)

    def tags(self):
        return super().tags() + ["sync"]

    def display_name(self):
        return f"SyncCalendarEvents[{self.integration_id}]"

    def determine_urgency(self, db, now):
        priority = self.options.get("priority")
        if priority == "high":
            return Urgency.HIGH
        if priority == "low":
            return Urgency.LOW
        return Urgency.NORMAL

    def handle(self, db, ctx):
        self.transition(JobState.VALIDATING)
        integration = self.load_integration(db)
        if not integration.is_active:
            raise SkipJob(f"integration {integration.id} is inactive")
        if not integration.sync_bookings and not integration.sync_availability:
            raise SkipJob(f"integration {integration.id} has nothing to sync")

        now = ctx.clock()
        record = CalendarSyncJob(
            calendar_integration_id=integration.id,
            job_type="sync_events",
            status="processing",
            started_at=now,
            created_at=now,
            job_data={"provider": integration.provider, "full_sync": bool(self.options.get("full_sync"))},
        )
        db.add(record)
        db.commit()
        self._record_id = record.id

        try:
            return self._sync(db, ctx, integration, now)
        except Exception as e:
            db.rollback()
            record = db.get(CalendarSyncJob, self._record_id)
            record.status = "failed"
            record.error_message = str(e)[:2000]
            record.completed_at = ctx.clock()
            db.commit()
            raise

    def _sync(self, db, ctx, integration, now):
        window_start = now - timedelta(days=int(integration.get_setting("sync_past_days")))
        window_end = now + timedelta(days=int(integration.get_setting("sync_future_days")))
        sync_token = None if self.options.get("full_sync") else integration.get_setting("sync_token")

        adapter = ctx.registry.get(integration.provider)
        result = self.call_provider(
            ctx, integration, adapter.get_event_changes, integration, sync_token,
            {"time_min": window_start, "time_max": window_end, "show_deleted": True, "max_results": 250},
        )
        items = [item for item in result.get("items", []) if item.get("id")]

        processor = ChangeProcessor(db, ctx, integration, self)
        processor.process(
            ChangeNotification(external_id=item["id"], change_type=change_type_for(item), data=item)
            for item in items
        )

        self.transition(JobState.UPDATING_LOCAL_STATE)
        if result.get("full_snapshot"):
            processor.remove_missing((item["id"] for item in items), window_start, window_end)
        actions = processor.resolve_conflicts()
        summary = processor.summary()

        if result.get("next_sync_token"):
            integration.update_settings(sync_token=result["next_sync_token"])

        record = db.get(CalendarSyncJob, self._record_id)
        record.status = "completed"
        record.completed_at = ctx.clock()
        record.events_processed = summary["processed"]
        record.merge_data(results=summary, conflict_actions=actions)

        reset_errors(integration, now)
        logger.info(f"🔄 Synced integration {integration.id}: {summary['processed']} events processed")
        return JobResult(data=summary)

    def on_error(self, error, db, ctx):
        try:
            integration = self.load_integration(db)
        except SkipJob:
            return None
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
        record = db.get(CalendarSyncJob, _uuid(self._record_id)) if self._record_id else None
        if record is not None:
            record.status = "failed"
            record.error_message = str(error)[:2000]
        record_failure(integration, error, ctx.settings.SYNC_FAILURE_THRESHOLD, ctx.notifier, ctx.clock())


def sync_active_integrations(db, dispatcher, providers=None) -> dict:
    """Dispatch a pull for every active integration (optionally per provider)"""
    query = db.query(CalendarIntegration).filter(CalendarIntegration.is_active.is_(True))
    if providers:
        query = query.filter(CalendarIntegration.provider.in_(list(providers)))

    dispatched = 0
    for integration in query.all():
        if dispatcher.dispatch(SyncCalendarEvents(integration.id, options={"priority": "low"})):
            dispatched += 1
    return {"dispatched": dispatched}
