import random

import pytest

from chatpoll.backoff import backoff_delay, base_delay_seconds, should_retry
from chatpoll.config import RetryPolicy
from chatpoll.errors import ErrorKind


def test_base_delay_grows_monotonically_and_caps_at_max() -> None:
    policy = RetryPolicy(initial_delay_ms=1_000, max_delay_ms=60_000, factor=2.0, jitter=0)

    delays = [backoff_delay(attempt, policy) for attempt in range(12)]

    assert delays[:4] == [1.0, 2.0, 4.0, 8.0]
    assert all(a <= b for a, b in zip(delays, delays[1:], strict=False))
    assert max(delays) == 60.0


def test_huge_attempt_saturates_instead_of_overflowing() -> None:
    policy = RetryPolicy(initial_delay_ms=1_000, max_delay_ms=30_000, factor=10.0, jitter=0)

    assert base_delay_seconds(10_000, policy) == 30.0


def test_negative_attempt_is_rejected() -> None:
    with pytest.raises(ValueError):
        base_delay_seconds(-1, RetryPolicy())


def test_jitter_stays_within_band_and_never_negative() -> None:
    policy = RetryPolicy(initial_delay_ms=1_000, max_delay_ms=60_000, jitter=0.1)
    rng = random.Random(1234)

    for _ in range(200):
        delay = backoff_delay(0, policy, rng=rng)
        assert 0.9 <= delay <= 1.1


def test_rate_limited_uses_floor_and_retry_after() -> None:
    policy = RetryPolicy(initial_delay_ms=100, max_delay_ms=1_000, jitter=0, rate_limit_floor_ms=5_000)

    assert backoff_delay(0, policy, kind=ErrorKind.RATE_LIMITED) == 5.0
    assert backoff_delay(0, policy, kind=ErrorKind.RATE_LIMITED, retry_after=12) == 12.0
    assert backoff_delay(0, policy, kind=ErrorKind.SERVER) == 0.1
    assert backoff_delay(0, policy, kind=ErrorKind.SERVER, retry_after=3) == 3.0


def test_should_retry_respects_kind_and_budget() -> None:
    unbounded = RetryPolicy()
    assert should_retry(ErrorKind.NETWORK, 10_000, unbounded) is True
    assert should_retry(ErrorKind.AUTH, 0, unbounded) is False
    assert should_retry(ErrorKind.MALFORMED, 0, unbounded) is False

    bounded = RetryPolicy(max_retries=2)
    assert should_retry(ErrorKind.SERVER, 0, bounded) is True
    assert should_retry(ErrorKind.SERVER, 1, bounded) is True
    assert should_retry(ErrorKind.SERVER, 2, bounded) is False

    assert should_retry(ErrorKind.STORAGE, 0, RetryPolicy(max_retries=0)) is False
