"""
Retry policy tests.

Guards against:
1. Backoff schedule drifting from 1s, 2s, 4s, 8s, 16s
2. Retry-After header values being ignored or misparsed
3. Retry cap off-by-one
"""
from datetime import datetime, timezone

from crmpulse.utils.retry import RetryPolicy, RetryStats, calculate_backoff, parse_retry_after


def test_backoff_schedule_doubles_from_one_second():
    assert [calculate_backoff(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 16.0]


def test_backoff_is_capped():
    assert calculate_backoff(10, base_delay=1.0, max_delay=30.0) == 30.0


def test_backoff_jitter_stays_within_25_percent():
    for _ in range(20):
        delay = calculate_backoff(3, jitter=True)
        assert 4.0 <= delay <= 5.0


def test_parse_retry_after():
    assert parse_retry_after("3") == 3.0
    assert parse_retry_after(" 1.5 ") == 1.5
    assert parse_retry_after(None) is None
    assert parse_retry_after("-2") is None
    assert parse_retry_after("soon") is None


def test_parse_retry_after_http_date():
    now = datetime(2015, 10, 21, 7, 27, 30, tzinfo=timezone.utc)
    assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT", now=now) == 30.0
    # A date already past means retry right away
    assert parse_retry_after("Wed, 21 Oct 2015 07:00:00 GMT", now=now) == 0.0


def test_policy_allows_exactly_max_retries():
    policy = RetryPolicy(max_retries=5)
    assert [policy.can_retry(n) for n in range(7)] == [True] * 5 + [False] * 2


def test_server_delay_overrides_backoff():
    policy = RetryPolicy()
    assert policy.delay_for(4) == 8.0
    assert policy.delay_for(4, server_delay=2.0) == 2.0
    assert policy.delay_for(1, server_delay=0.0) == 0.0


def test_retry_stats_counts_retries_separately_from_attempts():
    stats = RetryStats()
    stats.record_attempt()
    stats.record_retry("429 Too Many Requests", 1.0)
    stats.record_attempt()
    stats.record_retry("429 Too Many Requests", 2.0)
    stats.record_attempt()
    stats.mark_success()

    data = stats.to_dict()
    assert data["attempts"] == 3
    assert data["retries"] == 2
    assert data["total_delay_seconds"] == 3.0
    assert data["success"] is True
