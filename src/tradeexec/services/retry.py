from __future__ import annotations

import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parsedate_to_datetime
from typing import TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryAttempt:
    attempt: int
    delay_ms: int
    error_type: str
    used_retry_after: bool = False


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with +/-50% jitter, capped per delay and in total.

    A server-provided Retry-After replaces the computed delay (still capped
    by ``max_delay_ms``).
    """

    max_attempts: int
    base_delay_ms: int
    max_delay_ms: int
    max_total_sleep_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delay values must be >= 0")

    def delay_ms(
        self, attempt: int, prng: random.Random, retry_after_s: float | None = None
    ) -> tuple[int, bool]:
        if retry_after_s is not None:
            return min(self.max_delay_ms, int(retry_after_s * 1000)), True
        ceiling = min(self.max_delay_ms, self.base_delay_ms * 2 ** (attempt - 1))
        return int(ceiling * (0.5 + prng.random())), False


def parse_retry_after_seconds(value: str | None) -> float | None:
    """Seconds to wait from a Retry-After header (delta-seconds or HTTP date)."""
    text = (value or "").strip()
    if not text:
        return None
    try:
        seconds = float(text)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds >= 0 else None

    try:
        when = parsedate_to_datetime(text)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    return max(0.0, (when - datetime.now(UTC)).total_seconds())


def retry_with_backoff(  # noqa: UP047
    fn: Callable[[], T],
    *,
    policy: BackoffPolicy,
    retry_on: tuple[type[Exception], ...],
    jitter_seed: int = 0,
    sleep_fn: Callable[[float], None] | None = None,
    on_retry: Callable[[RetryAttempt], None] | None = None,
    retry_after_getter: Callable[[Exception], str | None] | None = None,
) -> T:
    sleep = sleep_fn or time.sleep
    prng = random.Random(jitter_seed)
    slept_s = 0.0
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except retry_on as exc:
            if attempt >= policy.max_attempts:
                raise
            hint = retry_after_getter(exc) if retry_after_getter is not None else None
            delay_ms, used_hint = policy.delay_ms(
                attempt, prng, parse_retry_after_seconds(hint)
            )
            delay_s = delay_ms / 1000.0
            budget = policy.max_total_sleep_seconds
            if budget is not None and slept_s + delay_s > budget:
                raise
            if on_retry is not None:
                on_retry(
                    RetryAttempt(
                        attempt=attempt,
                        delay_ms=delay_ms,
                        error_type=type(exc).__name__,
                        used_retry_after=used_hint,
                    )
                )
            sleep(delay_s)
            slept_s += delay_s
