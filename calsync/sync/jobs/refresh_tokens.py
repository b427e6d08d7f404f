"""RefreshCalendarTokens: renew OAuth tokens ahead of expiry"""
import logging
from datetime import timedelta

from calsync.models import CalendarIntegration
from calsync.services.integration_service import deactivate, record_failure, reset_errors
from calsync.sync import retry_policy
from calsync.sync.errors import SkipJob, TerminalSyncError, TokenRefreshError
from calsync.sync.jobs.base import CalendarJob, JobResult, JobState, register_job
from calsync.sync.retry_policy import JobKind, Urgency

logger = logging.getLogger(__name__)

REAUTH_MESSAGE = "Re-authorization required: no refresh token available"
MIN_SCHEDULE_SECONDS = 300


@register_job
class RefreshCalendarTokens(CalendarJob):
    kind = JobKind.TOKEN_REFRESH

    def __init__(self, integration_id, options=None, **kwargs):
        super().__init__(integration_id, options, **kwargs)

    def unique_key(self):
        return f"refresh_calendar_tokens_{self.integration_id}"

    def concurrency_key(self):
        return f"tokens_{self.integration_id}"

    def tags(self):
        return super().tags() + ["token_refresh"]

    def display_name(self):
        return f"RefreshCalendarTokens[{self.integration_id}]"

    def determine_urgency(self, db, now):
        return Urgency.URGENT if self.options.get("urgent") else Urgency.NORMAL

    def handle(self, db, ctx):
        self.transition(JobState.VALIDATING)
        integration = self.load_integration(db)
        if not integration.is_active:
            raise SkipJob(f"integration {integration.id} is inactive")

        now = ctx.clock()
        if not integration.refresh_token:
            integration.sync_error_count = (integration.sync_error_count or 0) + 1
            integration.last_sync_error = REAUTH_MESSAGE
            integration.needs_reauthorization = True
            deactivate(integration, REAUTH_MESSAGE, now=now)
            ctx.notifier.notify("reauthorization_required", integration, reason=REAUTH_MESSAGE)
            return JobResult(status="reauthorization_required")

        refreshed = self.call_provider(ctx, integration, ctx.token_service.refresh_tokens, integration)
        if not refreshed:
            raise TokenRefreshError(f"Token refresh for integration {integration.id} returned no credentials")

        self.transition(JobState.UPDATING_LOCAL_STATE)
        reset_errors(integration, now)
        integration.needs_reauthorization = False

        next_refresh = None
        if self.options.get("schedule_next", True):
            next_refresh = self._schedule_next(integration, ctx, now)
        return JobResult(data={
            "expires_at": integration.token_expires_at.isoformat() if integration.token_expires_at else None,
            "next_refresh_in": next_refresh,
        })

    def _schedule_next(self, integration, ctx, now):
        if integration.token_expires_at is None:
            return None
        delay = int((integration.token_expires_at - timedelta(hours=1) - now).total_seconds())
        if delay < MIN_SCHEDULE_SECONDS:
            logger.info(f"Next refresh for integration {integration.id} would be in {delay}s, not scheduling")
            return None
        # This job still holds the uniqueness claim, so skip the check
        self.dispatch(ctx, RefreshCalendarTokens(integration.id, options={"schedule_next": True}),
                      delay=delay, unique=False)
        return delay

    def should_retry(self, error, db, ctx):
        if isinstance(error, TerminalSyncError):
            return False
        return not retry_policy.is_terminal_error(self.kind, error)

    def on_error(self, error, db, ctx):
        if retry_policy.is_rate_limit_error(error):
            return self.rate_limit_release(ctx)
        return None

    def failed(self, error, db, ctx):
        try:
            integration = self.load_integration(db)
        except SkipJob:
            return

        if retry_policy.is_terminal_error(self.kind, error):
            integration.needs_reauthorization = True
            ctx.notifier.notify("reauthorization_required", integration, reason=str(error))

        record_failure(integration, error, ctx.settings.TOKEN_FAILURE_THRESHOLD, ctx.notifier, ctx.clock())


def refresh_expiring_tokens(db, dispatcher, now, lookahead_hours: int = 2) -> dict:
    """Dispatch urgent refreshes for integrations whose token expires soon"""
    horizon = now + timedelta(hours=lookahead_hours)
    candidates = (
        db.query(CalendarIntegration)
        .filter(CalendarIntegration.is_active.is_(True))
        .filter(CalendarIntegration.refresh_token_encrypted.isnot(None))
        .filter(CalendarIntegration.token_expires_at.isnot(None))
        .filter(CalendarIntegration.token_expires_at < horizon)
        .all()
    )

    dispatched, errors = 0, 0
    for integration in candidates:
        job = RefreshCalendarTokens(integration.id, options={"schedule_next": False, "urgent": True})
        try:
            if dispatcher.dispatch(job):
                dispatched += 1
        except Exception as e:
            errors += 1
            logger.error(f"❌ Could not dispatch token refresh for integration {integration.id}: {e}")

    logger.info(f"🔑 Token sweep: {dispatched} refreshes dispatched, {errors} errors")
    return {"dispatched": dispatched, "errors": errors}
