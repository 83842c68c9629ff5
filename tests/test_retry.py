"""Tests for the backoff policy and tick deadlines."""

from __future__ import annotations

import pytest

from inbox_ledger.core.config import RetrySettings
from inbox_ledger.core.errors import MessageNotFound, RateLimited, TransientError
from inbox_ledger.transport import Deadline, RetryPolicy


class Flaky:
    """Operation that raises the scripted errors before succeeding."""

    def __init__(self, *errors: Exception) -> None:
        self.errors = list(errors)
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


def _policy(sleeps: list[float], **kwargs) -> RetryPolicy:
    return RetryPolicy(sleep=sleeps.append, rng=lambda: 1.0, **kwargs)


def test_transient_errors_are_retried_with_exponential_backoff() -> None:
    sleeps: list[float] = []
    operation = Flaky(TransientError("a"), TransientError("b"))

    assert _policy(sleeps).call(operation, description="op") == "ok"
    assert operation.calls == 3
    assert sleeps == [1.0, 2.0]


def test_backoff_is_capped_and_jittered() -> None:
    policy = RetryPolicy(base_delay=1.0, max_delay=5.0, rng=lambda: 0.5)

    assert policy.backoff(1) == 0.5
    assert policy.backoff(10) == 2.5


def test_transient_error_escapes_after_max_attempts() -> None:
    sleeps: list[float] = []
    operation = Flaky(*(TransientError(str(index)) for index in range(5)))

    with pytest.raises(TransientError):
        _policy(sleeps, max_attempts=3).call(operation, description="op")
    assert operation.calls == 3


def test_rate_limit_waits_without_spending_attempts() -> None:
    sleeps: list[float] = []
    operation = Flaky(
        RateLimited("slow", retry_after=3),
        RateLimited("slow", retry_after=3),
        TransientError("x"),
    )

    assert _policy(sleeps, max_attempts=2).call(operation, description="op") == "ok"
    assert sleeps == [3, 3, 1.0]


def test_rate_limit_longer_than_budget_escapes() -> None:
    now = [0.0]
    deadline = Deadline(10.0, clock=lambda: now[0])
    operation = Flaky(RateLimited("slow", retry_after=60))

    with pytest.raises(RateLimited):
        _policy([]).call(operation, description="op", deadline=deadline)


def test_other_errors_are_not_retried() -> None:
    operation = Flaky(MessageNotFound("gone"))

    with pytest.raises(MessageNotFound):
        _policy([]).call(operation, description="op")
    assert operation.calls == 1


def test_deadline_tracks_remaining_budget() -> None:
    now = [100.0]
    deadline = Deadline(20.0, clock=lambda: now[0])

    now[0] = 115.0
    assert deadline.remaining() == 5.0
    assert not deadline.expired()
    assert deadline.expired(margin=5.0)


def test_policy_from_settings() -> None:
    policy = RetryPolicy.from_settings(
        RetrySettings(max_attempts=6, base_delay_seconds=0.5, max_delay_seconds=8)
    )

    assert (policy.max_attempts, policy.base_delay, policy.max_delay) == (6, 0.5, 8.0)
