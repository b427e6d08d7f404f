# calsync/schemas/calendar_events.py
from __future__ import annotations
from pydantic import BaseModel, Field, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum


class ChangeType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    CANCELLED = "cancelled"


class ConflictSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ResolutionStrategy(str, Enum):
    CANCEL_BOOKING = "cancel_booking"
    IGNORE_CONFLICT = "ignore_conflict"
    NOTIFY_ONLY = "notify_only"
    MANUAL = "manual"


RESOLUTION_OPTIONS = [
    "reschedule_booking",
    "ignore_conflict",
    "cancel_booking",
    "modify_event_blocking",
]


class CanonicalEvent(BaseModel):
    """Provider-agnostic calendar event"""
    external_id: str = Field(..., description="Provider event id")
    title: str = Field("Untitled Event", description="Event title")
    description: Optional[str] = Field(None, description="Event description")
    starts_at: datetime = Field(..., description="Start (UTC)")
    ends_at: datetime = Field(..., description="End (UTC)")
    is_all_day: bool = Field(False, description="Date-only event")
    blocks_booking: bool = Field(True, description="Whether the event makes the time unavailable")

    @field_validator("ends_at")
    @classmethod
    def end_not_before_start(cls, v: datetime, info) -> datetime:
        starts_at = info.data.get("starts_at")
        if starts_at and v < starts_at:
            raise ValueError("End time must not be before start time")
        return v


class ChangeNotification(BaseModel):
    """One changed event reported by a provider"""
    external_id: str = Field(..., description="Provider event id")
    change_type: ChangeType = Field(..., description="Kind of change")
    data: Optional[Dict[str, Any]] = Field(None, description="Raw provider payload when embedded")


class WebhookNotification(BaseModel):
    """Provider push notification, parsed"""
    webhook_id: Optional[str] = Field(None, description="Provider message id used for dedup")
    resource_state: Optional[str] = Field(None, description="Google resource state")
    requires_fetch: bool = Field(False, description="Changes must be fetched from the provider")
    changes: List[ChangeNotification] = Field(default_factory=list)


class Conflict(BaseModel):
    """Overlap between an external event and an internal booking"""
    booking_id: str = Field(..., description="Booking identifier")
    booking_reference: Optional[str] = Field(None, description="Human booking reference")
    external_event_id: str = Field(..., description="Conflicting external event")
    event_title: Optional[str] = Field(None)
    severity: ConflictSeverity = Field(..., description="Bucketed by overlap minutes")
    overlap_minutes: int = Field(..., ge=0)
    booking_start: datetime
    booking_end: datetime
    event_start: datetime
    event_end: datetime
    resolution_options: List[str] = Field(default_factory=lambda: list(RESOLUTION_OPTIONS))
