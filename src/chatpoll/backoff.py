"""Retry delay computation.

Pure functions over a :class:`~chatpoll.config.RetryPolicy`:

    delay(attempt) = min(max_delay, initial_delay * factor ** attempt) * (1 ± jitter)

`attempt` is the number of consecutive failures *before* the one being
handled, so the first retry waits `initial_delay`. Callers reset it to zero
after every successful poll iteration (including an empty long-poll response).
"""

from __future__ import annotations

import random

from chatpoll.config import RetryPolicy
from chatpoll.errors import ErrorKind, is_retryable


def base_delay_seconds(attempt: int, policy: RetryPolicy) -> float:
    """Return the un-jittered delay for `attempt`, saturating at `max_delay`."""

    if attempt < 0:
        raise ValueError(f"attempt must be >= 0; got {attempt}")
    max_delay = policy.max_delay_ms / 1000
    try:
        raw = (policy.initial_delay_ms / 1000) * (policy.factor**attempt)
    except OverflowError:
        return max_delay
    return min(max_delay, raw)


def backoff_delay(
    attempt: int,
    policy: RetryPolicy,
    *,
    kind: ErrorKind | None = None,
    retry_after: float | None = None,
    rng: random.Random | None = None,
) -> float:
    """Return the jittered delay (seconds) before retry number `attempt + 1`.

    `RATE_LIMITED` failures wait at least `rate_limit_floor_ms`, and a
    server-provided `retry_after` hint is honoured as a lower bound. Floors
    are applied after jitter so they are never undercut.
    """

    delay = base_delay_seconds(attempt, policy)
    if policy.jitter:
        r = rng if rng is not None else random
        delay *= 1 + r.uniform(-policy.jitter, policy.jitter)
    delay = max(0.0, delay)

    if kind is ErrorKind.RATE_LIMITED:
        delay = max(delay, policy.rate_limit_floor_ms / 1000)
    if retry_after is not None and retry_after > 0:
        delay = max(delay, retry_after)
    return delay


def should_retry(kind: ErrorKind, attempt: int, policy: RetryPolicy) -> bool:
    """Return true when a failure of `kind` may be retried.

    `attempt` counts consecutive failures before this one. Non-retryable kinds
    bypass the budget entirely.
    """

    if not is_retryable(kind):
        return False
    if policy.max_retries is None:
        return True
    return attempt < policy.max_retries
