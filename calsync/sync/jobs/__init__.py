# calsync/sync/jobs/__init__.py
from .base import CalendarJob, JobContext, JobResult, JobState, JOB_TYPES, job_from_payload
from .create_event import CreateCalendarEvent
from .update_event import UpdateCalendarEvent
from .delete_event import DeleteCalendarEvent
from .process_webhook import ProcessCalendarWebhook
from .refresh_tokens import RefreshCalendarTokens, refresh_expiring_tokens
from .sync_events import SyncCalendarEvents, sync_active_integrations

__all__ = [
    "CalendarJob",
    "JobContext",
    "JobResult",
    "JobState",
    "JOB_TYPES",
    "job_from_payload",
    "CreateCalendarEvent",
    "UpdateCalendarEvent",
    "DeleteCalendarEvent",
    "ProcessCalendarWebhook",
    "RefreshCalendarTokens",
    "refresh_expiring_tokens",
    "SyncCalendarEvents",
    "sync_active_integrations",
]
