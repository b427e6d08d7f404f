"""
Event normalizer: Google / Outlook / iCal payloads into CanonicalEvent
"""
import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

from calsync.schemas.calendar_events import CanonicalEvent, ChangeType

logger = logging.getLogger(__name__)

UNTITLED = "Untitled Event"


def _zone(name: Optional[str]):
    if not name or name.upper() in ("UTC", "Z", "GMT"):
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown time zone {name!r}, assuming UTC")
        return timezone.utc


def _to_utc(value: datetime, tz_name: Optional[str] = None) -> datetime:
    if value.tzinfo is None:
        value = value.replace(tzinfo=_zone(tz_name))
    return value.astimezone(timezone.utc)


def start_of_day(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def end_of_day(day: date) -> datetime:
    return datetime.combine(day, time(23, 59, 59), tzinfo=timezone.utc)


def parse_time_field(field: Any, is_end: bool = False) -> Tuple[Optional[datetime], bool]:
    """Return (timestamp, is_all_day) for a provider start/end field.

    ``dateTime`` wins over ``date``; a bare date is all-day and maps to the
    start or end of that day.
    """
    if field is None:
        return None, False
    if isinstance(field, datetime):
        return _to_utc(field), False
    if isinstance(field, date):
        return (end_of_day(field) if is_end else start_of_day(field)), True
    if isinstance(field, str):
        return _to_utc(date_parser.isoparse(field)), False

    if field.get("dateTime"):
        return _to_utc(date_parser.isoparse(field["dateTime"]), field.get("timeZone")), False
    if field.get("date"):
        day = date_parser.isoparse(field["date"]).date()
        return (end_of_day(day) if is_end else start_of_day(day)), True
    return None, False


def _is_non_blocking(raw: Dict[str, Any]) -> bool:
    if str(raw.get("transparency", "")).lower() == "transparent":
        return True
    if str(raw.get("showAs", "")).lower() == "free":
        return True
    if str(raw.get("transp", "")).upper() == "TRANSPARENT":
        return True
    return raw.get("blocks_booking") is False


def normalize_event(raw: Dict[str, Any], external_id: Optional[str] = None) -> CanonicalEvent:
    """Map one provider event payload into a CanonicalEvent"""
    starts_at, all_day = parse_time_field(raw.get("start"))
    if starts_at is None:
        raise ValueError(f"Event {external_id or raw.get('id')} has no start time")
    if raw.get("isAllDay"):
        all_day = True
        starts_at = start_of_day(starts_at.date())

    ends_at, _ = parse_time_field(raw.get("end"), is_end=True)
    if ends_at is None:
        ends_at = end_of_day(starts_at.date()) if all_day else starts_at + timedelta(hours=1)
    elif raw.get("isAllDay") and ends_at.time() == time.min and ends_at > starts_at:
        # Graph reports all-day ends as the next midnight
        ends_at = end_of_day((ends_at - timedelta(days=1)).date())

    title = raw.get("summary") or raw.get("subject") or raw.get("title") or UNTITLED
    description = raw.get("description")
    if description is None and isinstance(raw.get("body"), dict):
        description = raw["body"].get("content")

    return CanonicalEvent(
        external_id=str(external_id or raw.get("id")),
        title=title,
        description=description,
        starts_at=starts_at,
        ends_at=max(ends_at, starts_at),
        is_all_day=all_day,
        blocks_booking=not _is_non_blocking(raw),
    )


def change_type_for(raw: Dict[str, Any], default: ChangeType = ChangeType.UPDATED) -> ChangeType:
    """Change type of a fetched provider item"""
    if raw.get("@removed") or str(raw.get("status", "")).lower() == "cancelled":
        return ChangeType.DELETED
    change = raw.get("changeType") or raw.get("change_type")
    if change:
        try:
            return ChangeType(str(change).lower())
        except ValueError:
            logger.warning(f"Unknown change type {change!r}")
    return default
