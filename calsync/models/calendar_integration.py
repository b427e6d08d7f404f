# ===== calsync/models/calendar_integration.py =====
from sqlalchemy import Column, String, Boolean, LargeBinary, JSON, Integer, Text, Uuid
from calsync.models.base import Base, UTCDateTime, utcnow
from calsync.utils.encryption import encrypt_token, decrypt_token
import uuid

DEFAULT_SYNC_SETTINGS = {
    "conflict_resolution": "manual",
    "event_title_template": "Booking: {service_name}",
    "sync_past_days": 7,
    "sync_future_days": 90,
}

DEFAULT_NOTIFICATION_PREFERENCES = {
    "notify_on_conflicts": True,
    "notify_on_webhook_processing": False,
}


class CalendarIntegration(Base):
    __tablename__ = "calendar_integrations"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    service_id = Column(Uuid, index=True)  # bookings of this service share the calendar

    provider = Column(String(20), nullable=False)  # 'google', 'outlook', 'ical'
    calendar_id = Column(String(255), default="primary")
    calendar_name = Column(String(255))
    ical_url = Column(Text)  # subscribed feed for 'ical'

    is_active = Column(Boolean, default=True, nullable=False)
    sync_bookings = Column(Boolean, default=True, nullable=False)
    sync_availability = Column(Boolean, default=False, nullable=False)
    auto_block_external_events = Column(Boolean, default=False, nullable=False)

    # OAuth tokens, Fernet encrypted
    access_token_encrypted = Column(LargeBinary)
    refresh_token_encrypted = Column(LargeBinary)
    token_expires_at = Column(UTCDateTime)

    # conflict_resolution, webhook_token, client_state, sync_token, title template...
    sync_settings = Column(JSON, default=dict)
    notification_preferences = Column(JSON, default=dict)

    sync_error_count = Column(Integer, default=0, nullable=False)
    last_sync_error = Column(Text)
    last_sync_at = Column(UTCDateTime)
    needs_reauthorization = Column(Boolean, default=False, nullable=False)
    disabled_at = Column(UTCDateTime)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    @property
    def access_token(self):
        return decrypt_token(self.access_token_encrypted)

    @access_token.setter
    def access_token(self, value):
        self.access_token_encrypted = encrypt_token(value)

    @property
    def refresh_token(self):
        return decrypt_token(self.refresh_token_encrypted)

    @refresh_token.setter
    def refresh_token(self, value):
        self.refresh_token_encrypted = encrypt_token(value)

    def get_setting(self, key, default=None):
        value = (self.sync_settings or {}).get(key)
        if value is None:
            return DEFAULT_SYNC_SETTINGS.get(key, default)
        return value

    def update_settings(self, **values):
        # JSON columns only notice reassignment
        merged = dict(self.sync_settings or {})
        merged.update(values)
        self.sync_settings = merged

    def wants_notification(self, key) -> bool:
        prefs = self.notification_preferences or {}
        return bool(prefs.get(key, DEFAULT_NOTIFICATION_PREFERENCES.get(key, False)))

    @property
    def conflict_resolution(self) -> str:
        return self.get_setting("conflict_resolution") or "manual"

    def render_event_title(self, booking) -> str:
        template = self.get_setting("event_title_template")
        duration = booking.duration_minutes or int(
            (booking.end_time - booking.scheduled_at).total_seconds() // 60
        )
        return (
            template.replace("{service_name}", booking.service_name or "Service")
            .replace("{client_name}", booking.client_name or "")
            .replace("{booking_ref}", booking.booking_reference or "")
            .replace("{duration}", str(duration))
        )

    def __repr__(self):
        return f"<CalendarIntegration {self.id} {self.provider} active={self.is_active}>"
