from __future__ import annotations
# calsync/schemas/task_payloads.py
from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone


class CalendarJobPayload(BaseModel):
    """Serialized calendar job as it travels through a queue"""
    kind: str = Field(..., description="Job kind, e.g. create_event")
    params: Dict[str, Any] = Field(default_factory=dict, description="Job constructor arguments")
    attempts: int = Field(0, description="Attempts already consumed")
    queue: Optional[str] = Field(None, description="Lane the job was routed to")
    correlation_id: Optional[str] = Field(None, description="Trigger correlation ID")
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
