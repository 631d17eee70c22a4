from datetime import timedelta

from ddex_delivery.services.retry_policy import RetryPolicy


def test_fixed_schedule():
    policy = RetryPolicy(max_attempts=3, delays_seconds=[300, 900, 3600])
    assert policy.next_delay(1) == timedelta(minutes=5)
    assert policy.next_delay(2) == timedelta(minutes=15)
    assert policy.next_delay(3) is None


def test_last_delay_repeats_for_longer_schedules():
    policy = RetryPolicy(max_attempts=5, delays_seconds=[60, 120])
    assert policy.next_delay(3) == timedelta(seconds=120)
    assert policy.next_delay(4) == timedelta(seconds=120)
    assert policy.next_delay(5) is None


def test_defaults_from_settings():
    policy = RetryPolicy()
    assert policy.max_attempts == 3
    assert policy.next_delay(1) == timedelta(minutes=5)
