"""
Retry and backoff policy for calendar jobs

delay = min(base * 2^(attempt-1), ceiling) + randint(0, jitter)
"""
import random
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Tuple


class JobKind(str, Enum):
    CREATE = "create_event"
    UPDATE = "update_event"
    DELETE = "delete_event"
    WEBHOOK = "process_webhook"
    TOKEN_REFRESH = "refresh_tokens"
    SYNC = "sync_events"


class Urgency(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


# Lane order for the in-process queue, most important first
LANE_ORDER = (Urgency.URGENT, Urgency.HIGH, Urgency.NORMAL, Urgency.LOW)

COMMON_TERMINAL_ERRORS = ("invalid_grant", "unauthorized", "forbidden", "calendar_not_found")


@dataclass(frozen=True)
class KindPolicy:
    base_delay: int
    urgent_base_delay: int
    ceiling: int
    jitter: int
    rate_limit_penalty: int
    timeout: int
    unique_for: int
    terminal_errors: Tuple[str, ...]
    queues: Dict[Urgency, str]


_EVENT_QUEUES = {
    Urgency.URGENT: "calendar-events-urgent",
    Urgency.HIGH: "calendar-events-high",
    Urgency.NORMAL: "calendar-events",
    Urgency.LOW: "calendar-events",
}

POLICIES: Dict[JobKind, KindPolicy] = {
    JobKind.CREATE: KindPolicy(
        base_delay=30, urgent_base_delay=15, ceiling=1800, jitter=15,
        rate_limit_penalty=120, timeout=120, unique_for=300,
        terminal_errors=COMMON_TERMINAL_ERRORS + ("event_already_exists",),
        queues=_EVENT_QUEUES,
    ),
    JobKind.UPDATE: KindPolicy(
        base_delay=30, urgent_base_delay=15, ceiling=1800, jitter=15,
        rate_limit_penalty=120, timeout=120, unique_for=180,
        terminal_errors=COMMON_TERMINAL_ERRORS + ("event_locked",),
        queues=_EVENT_QUEUES,
    ),
    JobKind.DELETE: KindPolicy(
        base_delay=20, urgent_base_delay=10, ceiling=300, jitter=10,
        rate_limit_penalty=60, timeout=60, unique_for=60,
        terminal_errors=COMMON_TERMINAL_ERRORS,
        queues=_EVENT_QUEUES,
    ),
    JobKind.WEBHOOK: KindPolicy(
        base_delay=30, urgent_base_delay=30, ceiling=300, jitter=15,
        rate_limit_penalty=60, timeout=300, unique_for=300,
        terminal_errors=COMMON_TERMINAL_ERRORS,
        queues={
            Urgency.URGENT: "calendar-webhooks-high",
            Urgency.HIGH: "calendar-webhooks-high",
            Urgency.NORMAL: "calendar-webhooks",
            Urgency.LOW: "calendar-webhooks-low",
        },
    ),
    JobKind.TOKEN_REFRESH: KindPolicy(
        base_delay=120, urgent_base_delay=120, ceiling=3600, jitter=60,
        rate_limit_penalty=300, timeout=180, unique_for=1800,
        terminal_errors=COMMON_TERMINAL_ERRORS + (
            "invalid_client",
            "unauthorized_client",
            "refresh_token_expired",
            "refresh_token_revoked",
        ),
        queues={
            Urgency.URGENT: "calendar-tokens-urgent",
            Urgency.HIGH: "calendar-tokens-urgent",
            Urgency.NORMAL: "calendar-tokens",
            Urgency.LOW: "calendar-tokens",
        },
    ),
    JobKind.SYNC: KindPolicy(
        base_delay=60, urgent_base_delay=60, ceiling=3600, jitter=30,
        rate_limit_penalty=300, timeout=300, unique_for=300,
        terminal_errors=("invalid_grant", "unauthorized", "forbidden"),
        queues={
            Urgency.URGENT: "calendar-sync-high",
            Urgency.HIGH: "calendar-sync-high",
            Urgency.NORMAL: "calendar-sync",
            Urgency.LOW: "calendar-sync-low",
        },
    ),
}


def policy_for(kind: JobKind) -> KindPolicy:
    return POLICIES[JobKind(kind)]


def is_terminal_error(kind: JobKind, error) -> bool:
    """True when the error message matches one of the kind's terminal markers"""
    message = str(error).lower()
    return any(marker in message for marker in policy_for(kind).terminal_errors)


def message_contains(error, *needles: str) -> bool:
    message = str(error).lower()
    return any(needle in message for needle in needles)


def is_rate_limit_error(error) -> bool:
    return message_contains(error, "rate limit", "ratelimit", "too many requests", "quota")


def is_token_error(error) -> bool:
    return message_contains(error, "token")


def is_not_found_error(error) -> bool:
    return message_contains(error, "not found", "deleted", "does not exist")


def compute_delay(
    kind: JobKind,
    attempt: int,
    urgency: Urgency = Urgency.NORMAL,
    rng: Optional[random.Random] = None,
) -> int:
    """Seconds to wait before the next attempt (attempt numbers start at 1)"""
    policy = policy_for(kind)
    rng = rng or random
    base = policy.urgent_base_delay if urgency == Urgency.URGENT else policy.base_delay
    exponent = max(attempt, 1) - 1
    delay = min(base * (2 ** exponent), policy.ceiling)
    return int(delay + rng.randint(0, policy.jitter))


def rate_limit_delay(
    kind: JobKind,
    attempt: int,
    urgency: Urgency = Urgency.NORMAL,
    rng: Optional[random.Random] = None,
) -> int:
    return compute_delay(kind, attempt, urgency, rng) + policy_for(kind).rate_limit_penalty


def determine_urgency(scheduled_at: Optional[datetime], now: datetime) -> Urgency:
    """Urgency from whole hours until the booking starts"""
    if scheduled_at is None:
        return Urgency.NORMAL
    hours = int((scheduled_at - now).total_seconds() / 3600)
    if hours <= 2:
        return Urgency.URGENT
    if hours <= 24:
        return Urgency.HIGH
    return Urgency.NORMAL


def queue_for(kind: JobKind, urgency: Urgency) -> str:
    return policy_for(kind).queues[Urgency(urgency)]
