"""create calendar sync tables

Revision ID: 4c1f0a9d2b7e
Revises:
Create Date: 2026-10-17 09:12:41.503218

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '4c1f0a9d2b7e'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""

    # 1. Create calendar_integrations table
    op.create_table(
        'calendar_integrations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('service_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('calendar_id', sa.String(255), server_default='primary'),
        sa.Column('calendar_name', sa.String(255), nullable=True),
        sa.Column('ical_url', sa.Text, nullable=True),
        sa.Column('is_active', sa.Boolean, server_default=sa.text('true'), nullable=False),
        sa.Column('sync_bookings', sa.Boolean, server_default=sa.text('true'), nullable=False),
        sa.Column('sync_availability', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('auto_block_external_events', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('access_token_encrypted', sa.LargeBinary, nullable=True),
        sa.Column('refresh_token_encrypted', sa.LargeBinary, nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_settings', sa.JSON, nullable=True),
        sa.Column('notification_preferences', sa.JSON, nullable=True),
        sa.Column('sync_error_count', sa.Integer, server_default='0', nullable=False),
        sa.Column('last_sync_error', sa.Text, nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('needs_reauthorization', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('disabled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), onupdate=sa.text('now()'), nullable=False)
    )

    op.create_index('ix_calendar_integrations_user_id', 'calendar_integrations', ['user_id'])
    op.create_index('ix_calendar_integrations_service_id', 'calendar_integrations', ['service_id'])

    # 2. Create bookings table
    op.create_table(
        'bookings',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('service_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('service_name', sa.String(200), nullable=True),
        sa.Column('booking_reference', sa.String(50), nullable=True, unique=True),
        sa.Column('client_name', sa.String(200), nullable=True),
        sa.Column('client_email', sa.String(255), nullable=True),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_minutes', sa.Integer, nullable=True),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('total_amount', sa.Integer, server_default='0'),
        sa.Column('requires_consultation', sa.Boolean, server_default=sa.text('false')),
        sa.Column('urgency_level', sa.String(20), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text, nullable=True),
        sa.Column('auto_cancelled', sa.Boolean, server_default=sa.text('false')),
        sa.Column('conflict_event_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), onupdate=sa.text('now()'), nullable=False)
    )

    op.create_index('ix_bookings_user_id', 'bookings', ['user_id'])
    op.create_index('ix_bookings_service_id', 'bookings', ['service_id'])
    op.create_index('ix_bookings_scheduled_at', 'bookings', ['scheduled_at'])

    # 3. Create calendar_events table (local mirror of external events)
    op.create_table(
        'calendar_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id', ondelete='SET NULL'), nullable=True),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('description', sa.Text, nullable=True),
        sa.Column('starts_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('ends_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('is_all_day', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('blocks_booking', sa.Boolean, server_default=sa.text('true'), nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_updated_externally', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), onupdate=sa.text('now()'), nullable=False),
        sa.UniqueConstraint('calendar_integration_id', 'external_event_id', name='uq_calendar_event_external')
    )

    op.create_index('ix_calendar_events_booking_id', 'calendar_events', ['booking_id'])
    op.create_index('idx_calendar_events_window', 'calendar_events', ['calendar_integration_id', 'starts_at', 'ends_at'])

    # 4. Create calendar_sync_jobs table (webhook / pull history, dedup source)
    op.create_table(
        'calendar_sync_jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('job_type', sa.String(30), nullable=False),
        sa.Column('status', sa.String(30), server_default='pending', nullable=False),
        sa.Column('webhook_id', sa.String(255), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('events_processed', sa.Integer, server_default='0'),
        sa.Column('job_data', sa.JSON, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)
    )

    op.create_index('ix_calendar_sync_jobs_calendar_integration_id', 'calendar_sync_jobs', ['calendar_integration_id'])
    op.create_index('ix_calendar_sync_jobs_webhook_id', 'calendar_sync_jobs', ['webhook_id'])
    op.create_index('ix_calendar_sync_jobs_created_at', 'calendar_sync_jobs', ['created_at'])

    # 5. Create booking_sync_statuses table
    op.create_table(
        'booking_sync_statuses',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='SET NULL'), nullable=True),
        sa.Column('calendar_sync_failed', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('calendar_sync_error', sa.Text, nullable=True),
        sa.Column('calendar_sync_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('calendar_update_failed', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('calendar_update_error', sa.Text, nullable=True),
        sa.Column('calendar_update_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_changes', sa.JSON, nullable=True),
        sa.Column('calendar_deletion_failed', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('calendar_deletion_error', sa.Text, nullable=True),
        sa.Column('calendar_deletion_failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('calendar_event_deleted', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('calendar_event_deleted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('conflict_detected', sa.Boolean, server_default=sa.text('false'), nullable=False),
        sa.Column('conflict_details', sa.JSON, nullable=True),
        sa.Column('conflict_detected_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('conflict_event_id', sa.String(255), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), onupdate=sa.text('now()'), nullable=False)
    )

    # 6. Create calendar_pending_cleanups table
    op.create_table(
        'calendar_pending_cleanups',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('reason', sa.Text, nullable=True),
        sa.Column('attempts', sa.Integer, server_default='0', nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False)
    )

    op.create_index('ix_calendar_pending_cleanups_calendar_integration_id', 'calendar_pending_cleanups', ['calendar_integration_id'])
    op.create_index('ix_calendar_pending_cleanups_status', 'calendar_pending_cleanups', ['status'])

    # 7. Create calendar_conflict_reviews table
    op.create_table(
        'calendar_conflict_reviews',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('calendar_integration_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('calendar_integrations.id', ondelete='CASCADE'), nullable=False),
        sa.Column('booking_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('bookings.id', ondelete='CASCADE'), nullable=False),
        sa.Column('external_event_id', sa.String(255), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('overlap_minutes', sa.Integer, nullable=False),
        sa.Column('resolution_options', sa.JSON, nullable=True),
        sa.Column('status', sa.String(20), server_default='open', nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True)
    )

    op.create_index('ix_calendar_conflict_reviews_calendar_integration_id', 'calendar_conflict_reviews', ['calendar_integration_id'])
    op.create_index('ix_calendar_conflict_reviews_booking_id', 'calendar_conflict_reviews', ['booking_id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table('calendar_conflict_reviews')
    op.drop_table('calendar_pending_cleanups')
    op.drop_table('booking_sync_statuses')
    op.drop_table('calendar_sync_jobs')
    op.drop_table('calendar_events')
    op.drop_table('bookings')
    op.drop_table('calendar_integrations')
