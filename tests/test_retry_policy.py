import random
from datetime import timedelta

import pytest

from calsync.sync import retry_policy
from calsync.sync.retry_policy import POLICIES, JobKind, Urgency, compute_delay

from conftest import NOW


class ZeroJitter:
    def randint(self, low, high):
        return low


@pytest.mark.parametrize("kind", list(JobKind))
def test_backoff_grows_until_the_ceiling(kind):
    policy = POLICIES[kind]
    delays = [compute_delay(kind, attempt, Urgency.NORMAL, ZeroJitter()) for attempt in range(1, 13)]

    assert delays == sorted(delays)
    assert delays[0] == policy.base_delay
    assert delays[-1] == policy.ceiling


def test_jitter_stays_inside_the_kind_bounds():
    rng = random.Random(42)
    for kind in JobKind:
        policy = POLICIES[kind]
        for attempt in range(1, 8):
            floor = min(policy.base_delay * 2 ** (attempt - 1), policy.ceiling)
            for _ in range(25):
                assert floor <= compute_delay(kind, attempt, Urgency.NORMAL, rng) <= floor + policy.jitter


def test_urgent_bookings_back_off_faster():
    assert compute_delay(JobKind.CREATE, 1, Urgency.URGENT, ZeroJitter()) == 15
    assert compute_delay(JobKind.CREATE, 1, Urgency.NORMAL, ZeroJitter()) == 30
    assert compute_delay(JobKind.DELETE, 2, Urgency.URGENT, ZeroJitter()) == 20
    assert compute_delay(JobKind.DELETE, 2, Urgency.HIGH, ZeroJitter()) == 40


def test_rate_limit_delay_adds_the_kind_penalty():
    assert retry_policy.rate_limit_delay(JobKind.SYNC, 1, Urgency.NORMAL, ZeroJitter()) == 60 + 300
    assert retry_policy.rate_limit_delay(JobKind.CREATE, 2, Urgency.NORMAL, ZeroJitter()) == 60 + 120


@pytest.mark.parametrize(
    "kind,message,terminal",
    [
        (JobKind.CREATE, "Unauthorized (401)", True),
        (JobKind.CREATE, "event_already_exists", True),
        (JobKind.CREATE, "backend error 500", False),
        (JobKind.UPDATE, "event_locked by another client", True),
        (JobKind.DELETE, "event_locked", False),
        (JobKind.TOKEN_REFRESH, "refresh_token_revoked", True),
        (JobKind.TOKEN_REFRESH, "invalid_client: bad secret", True),
        (JobKind.WEBHOOK, "calendar_not_found", True),
        (JobKind.SYNC, "calendar_not_found", False),
        (JobKind.SYNC, "Forbidden (403)", True),
    ],
)
def test_terminal_error_classification(kind, message, terminal):
    assert retry_policy.is_terminal_error(kind, Exception(message)) is terminal


def test_error_families_match_on_message():
    assert retry_policy.is_rate_limit_error(Exception("Too Many Requests"))
    assert retry_policy.is_rate_limit_error(Exception("quota exceeded for calendar"))
    assert retry_policy.is_token_error(Exception("access token expired"))
    assert retry_policy.is_not_found_error(Exception("Resource has been deleted"))
    assert not retry_policy.is_not_found_error(Exception("backend error"))


@pytest.mark.parametrize(
    "offset,expected",
    [
        (timedelta(minutes=30), Urgency.URGENT),
        (timedelta(hours=2, minutes=59), Urgency.URGENT),
        (timedelta(hours=3), Urgency.HIGH),
        (timedelta(hours=24, minutes=30), Urgency.HIGH),
        (timedelta(hours=25), Urgency.NORMAL),
        (timedelta(hours=-1), Urgency.URGENT),
    ],
)
def test_urgency_from_whole_hours_until_start(offset, expected):
    assert retry_policy.determine_urgency(NOW + offset, NOW) == expected


def test_unknown_start_is_normal_urgency():
    assert retry_policy.determine_urgency(None, NOW) == Urgency.NORMAL


def test_queue_lanes_per_kind():
    assert retry_policy.queue_for(JobKind.CREATE, Urgency.URGENT) == "calendar-events-urgent"
    assert retry_policy.queue_for(JobKind.DELETE, Urgency.NORMAL) == "calendar-events"
    assert retry_policy.queue_for(JobKind.WEBHOOK, Urgency.LOW) == "calendar-webhooks-low"
    assert retry_policy.queue_for(JobKind.TOKEN_REFRESH, Urgency.HIGH) == "calendar-tokens-urgent"
    assert retry_policy.queue_for(JobKind.SYNC, Urgency.HIGH) == "calendar-sync-high"
