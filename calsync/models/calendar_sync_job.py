# calsync/models/calendar_sync_job.py
from sqlalchemy import Column, String, Integer, Text, JSON, ForeignKey, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
import uuid


class CalendarSyncJob(Base):
    """Audit row per sync_events / webhook_sync execution"""

    __tablename__ = "calendar_sync_jobs"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    calendar_integration_id = Column(Uuid, ForeignKey("calendar_integrations.id", ondelete="CASCADE"), nullable=False, index=True)
    job_type = Column(String(30), nullable=False)  # sync_events, webhook_sync
    status = Column(String(30), nullable=False, default="pending")  # pending, processing, completed, failed, duplicate_skipped
    webhook_id = Column(String(255), index=True)  # dedup key for webhook_sync

    started_at = Column(UTCDateTime)
    completed_at = Column(UTCDateTime)
    events_processed = Column(Integer, default=0)
    job_data = Column(JSON, default=dict)
    error_message = Column(Text)

    created_at = Column(UTCDateTime, default=utcnow, index=True)

    def merge_data(self, **values):
        data = dict(self.job_data or {})
        data.update(values)
        self.job_data = data
