from __future__ import annotations

import random
from datetime import UTC, datetime, timedelta

import pytest

from tradeexec.services.retry import BackoffPolicy, parse_retry_after_seconds, retry_with_backoff


class _Transient(Exception):
    pass


def test_parse_retry_after_accepts_seconds_and_http_dates() -> None:
    assert parse_retry_after_seconds("3") == 3.0
    assert parse_retry_after_seconds("-1") is None
    assert parse_retry_after_seconds("soon") is None
    assert parse_retry_after_seconds(None) is None

    later = datetime.now(UTC) + timedelta(seconds=2)
    parsed = parse_retry_after_seconds(later.strftime("%a, %d %b %Y %H:%M:%S GMT"))
    assert parsed is not None
    assert 0 <= parsed <= 2.5


def test_policy_delay_doubles_until_capped() -> None:
    policy = BackoffPolicy(max_attempts=5, base_delay_ms=1000, max_delay_ms=2000)
    prng = random.Random(7)

    first, _ = policy.delay_ms(1, prng)
    second, _ = policy.delay_ms(2, prng)
    third, _ = policy.delay_ms(3, prng)
    hinted, used_hint = policy.delay_ms(1, prng, retry_after_s=9)

    assert 500 <= first < 1500
    assert 1000 <= second < 3000
    assert 1000 <= third < 3000
    assert (hinted, used_hint) == (2000, True)


def test_retries_until_success() -> None:
    slept: list[float] = []
    calls = {"n": 0}

    def flaky() -> str:
        calls["n"] += 1
        if calls["n"] < 3:
            raise _Transient("again")
        return "done"

    result = retry_with_backoff(
        flaky,
        policy=BackoffPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=100),
        retry_on=(_Transient,),
        sleep_fn=slept.append,
    )

    assert result == "done"
    assert len(slept) == 2


def test_non_retryable_errors_propagate_immediately() -> None:
    calls = {"n": 0}

    def broken() -> None:
        calls["n"] += 1
        raise KeyError("nope")

    with pytest.raises(KeyError):
        retry_with_backoff(
            broken,
            policy=BackoffPolicy(max_attempts=3, base_delay_ms=10, max_delay_ms=10),
            retry_on=(_Transient,),
            sleep_fn=lambda _: None,
        )
    assert calls["n"] == 1


def test_total_sleep_budget_stops_retrying() -> None:
    calls = {"n": 0}

    def always() -> None:
        calls["n"] += 1
        raise _Transient("x")

    with pytest.raises(_Transient):
        retry_with_backoff(
            always,
            policy=BackoffPolicy(
                max_attempts=5, base_delay_ms=100, max_delay_ms=1000, max_total_sleep_seconds=0.04
            ),
            retry_on=(_Transient,),
            sleep_fn=lambda _: None,
        )
    assert calls["n"] == 1


def test_invalid_policy_rejected() -> None:
    with pytest.raises(ValueError):
        BackoffPolicy(max_attempts=0, base_delay_ms=1, max_delay_ms=1)
    with pytest.raises(ValueError):
        BackoffPolicy(max_attempts=1, base_delay_ms=-1, max_delay_ms=1)
