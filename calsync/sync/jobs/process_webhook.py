"""ProcessCalendarWebhook: apply a provider push notification"""
import hashlib
import json
import logging
from datetime import timedelta

from calsync.models import CalendarSyncJob
from calsync.schemas.calendar_events import ChangeNotification
from calsync.services.integration_service import record_failure, reset_errors
from calsync.sync import retry_policy
from calsync.sync.changes import ChangeProcessor
from calsync.sync.errors import ReauthorizationRequired, SkipJob, TokenRefreshError, WebhookSignatureError
from calsync.sync.jobs.base import CalendarJob, JobResult, JobState, register_job, _uuid
from calsync.sync.normalizer import change_type_for
from calsync.sync.retry_policy import JobKind, Urgency

logger = logging.getLogger(__name__)

OAUTH_PROVIDERS = ("google", "outlook")


def changes_key(integration_id) -> str:
    """Serializes jobs that consume an integration's change feed"""
    return f"changes_{integration_id}"


@register_job
class ProcessCalendarWebhook(CalendarJob):
    kind = JobKind.WEBHOOK

    def __init__(self, integration_id, payload, signature=None, options=None, **kwargs):
        super().__init__(integration_id, options, **kwargs)
        self.payload = dict(payload or {})
        self.signature = signature
        self._record_id = None

    def params(self):
        return {**super().params(), "payload": self.payload, "signature": self.signature}

    def payload_digest(self) -> str:
        raw = json.dumps(self.payload, sort_keys=True, default=str)
        return hashlib.md5(raw.encode()).hexdigest()

    def unique_key(self):
        return f"process_webhook_{self.integration_id}_{self.payload_digest()}"

    def concurrency_key(self):
        return changes_key(self.integration_id)

    def tags(self):
        return super().tags() + ["webhook"]

    def display_name(self):
        return f"ProcessCalendarWebhook[{self.integration_id}]"

    def determine_urgency(self, db, now):
        priority = self.options.get("priority")
        if priority == "high":
            return Urgency.HIGH
        if priority == "low":
            return Urgency.LOW
        return Urgency.NORMAL

    # ---- validation ----

    def _validate(self, integration, ctx):
        if not integration.is_active:
            raise SkipJob(f"integration {integration.id} is inactive")
        if not integration.sync_bookings and not integration.sync_availability:
            raise SkipJob(f"integration {integration.id} has nothing to sync")

        if integration.provider in OAUTH_PROVIDERS:
            if not integration.access_token:
                raise ReauthorizationRequired(f"integration {integration.id} has no OAuth token")
            expires = integration.token_expires_at
            if expires is not None and expires <= ctx.clock():
                if not self.refresh_inline(integration, ctx):
                    raise TokenRefreshError(f"OAuth token for integration {integration.id} expired")

    def _verify_signature(self, integration, adapter):
        if not self.signature:
            logger.warning(f"Webhook for integration {integration.id} arrived without a signature")
            return
        if not adapter.verify_webhook_signature(integration, self.payload, self.signature):
            raise WebhookSignatureError(f"Invalid webhook signature for integration {integration.id}")

    def _is_duplicate(self, db, integration, webhook_id, now, dedup_hours) -> bool:
        window_start = now - timedelta(hours=dedup_hours)
        return (
            db.query(CalendarSyncJob)
            .filter(CalendarSyncJob.calendar_integration_id == integration.id)
            .filter(CalendarSyncJob.job_type == "webhook_sync")
            .filter(CalendarSyncJob.webhook_id == webhook_id)
            .filter(CalendarSyncJob.status != "failed")
            .filter(CalendarSyncJob.created_at >= window_start)
            .first()
        ) is not None

    # ---- run ----

    def handle(self, db, ctx):
        self.transition(JobState.VALIDATING)
        integration = self.load_integration(db)
        self._validate(integration, ctx)

        adapter = ctx.registry.get(integration.provider)
        self._verify_signature(integration, adapter)
        notification = adapter.parse_webhook(self.payload)

        now = ctx.clock()
        webhook_id = notification.webhook_id
        if webhook_id and self._is_duplicate(db, integration, webhook_id, now, ctx.settings.WEBHOOK_DEDUP_HOURS):
            logger.info(f"🔁 Webhook {webhook_id} for integration {integration.id} already processed")
            db.add(CalendarSyncJob(
                calendar_integration_id=integration.id,
                job_type="webhook_sync",
                status="duplicate_skipped",
                webhook_id=webhook_id,
                started_at=now,
                created_at=now,
                completed_at=now,
                events_processed=0,
                job_data={"provider": integration.provider},
            ))
            return JobResult(status="duplicate_skipped", data={"webhook_id": webhook_id})

        record = CalendarSyncJob(
            calendar_integration_id=integration.id,
            job_type="webhook_sync",
            status="processing",
            webhook_id=webhook_id,
            started_at=now,
            created_at=now,
            job_data={"provider": integration.provider, "attempt": self.attempts},
        )
        db.add(record)
        db.commit()
        self._record_id = record.id

        try:
            return self._process(db, ctx, integration, adapter, notification)
        except Exception as e:
            self._mark_record_failed(db, e, ctx.clock())
            raise

    def _process(self, db, ctx, integration, adapter, notification):
        changes = list(notification.changes)
        next_sync_token = None
        if notification.requires_fetch:
            result = self.call_provider(
                ctx, integration, adapter.get_event_changes, integration,
                integration.get_setting("sync_token"),
                {"max_results": 100, "show_deleted": True},
            )
            changes.extend(
                ChangeNotification(external_id=item["id"], change_type=change_type_for(item), data=item)
                for item in result.get("items", [])
                if item.get("id")
            )
            next_sync_token = result.get("next_sync_token")

        processor = ChangeProcessor(db, ctx, integration, self)
        summary = processor.process(changes)
        # Advance only after the whole batch is applied
        if next_sync_token:
            integration.update_settings(sync_token=next_sync_token)

        self.transition(JobState.UPDATING_LOCAL_STATE)
        actions = processor.resolve_conflicts()

        now = ctx.clock()
        record = db.get(CalendarSyncJob, self._record_id)
        record.status = "completed"
        record.completed_at = now
        record.events_processed = summary["processed"]
        record.merge_data(results=summary, conflict_actions=actions, resource_state=notification.resource_state)

        reset_errors(integration, now)
        if integration.wants_notification("notify_on_webhook_processing"):
            ctx.notifier.notify("webhook_processed", integration, **{k: summary[k] for k in ("created", "updated", "deleted")})

        logger.info(
            f"📥 Webhook for integration {integration.id}: {summary['created']} created, "
            f"{summary['updated']} updated, {summary['deleted']} deleted, {len(summary['conflicts'])} conflicts"
        )
        return JobResult(data=summary)

    def _mark_record_failed(self, db, error, now):
        db.rollback()
        record = db.get(CalendarSyncJob, self._record_id) if self._record_id else None
        if record is None:
            return
        record.status = "failed"
        record.completed_at = now
        record.error_message = str(error)[:2000]
        db.commit()

    # ---- errors ----

    def on_error(self, error, db, ctx):
        try:
            integration = self.load_integration(db)
        except SkipJob:
            return None
        if retry_policy.is_token_error(error) and not isinstance(error, ReauthorizationRequired):
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
        if record is None:
            db.add(CalendarSyncJob(
                calendar_integration_id=integration.id,
                job_type="webhook_sync",
                status="failed",
                error_message=str(error)[:2000],
                started_at=ctx.clock(),
                completed_at=ctx.clock(),
                job_data={"provider": integration.provider},
            ))
        else:
            record.status = "failed"
            record.error_message = str(error)[:2000]
            record.completed_at = ctx.clock()

        record_failure(integration, error, ctx.settings.WEBHOOK_FAILURE_THRESHOLD, ctx.notifier, ctx.clock())
