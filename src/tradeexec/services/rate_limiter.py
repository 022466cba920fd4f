from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from time import time

from tradeexec.adapters.ttl_store import TtlStore
from tradeexec.domain.decision_codes import AdmissionReason
from tradeexec.domain.errors import AdmissionError

logger = logging.getLogger(__name__)

RATE_KEY_PREFIX = "decision_rate"


@dataclass(frozen=True)
class WindowBudget:
    """Fixed-window admission budget: at most ``limit`` hits per ``window_seconds``."""

    name: str
    limit: int
    window_seconds: int

    def validate(self) -> None:
        if self.limit < 1:
            raise ValueError(f"WindowBudget[{self.name}] limit must be >= 1")
        if self.window_seconds < 1:
            raise ValueError(f"WindowBudget[{self.name}] window_seconds must be >= 1")


@dataclass(frozen=True)
class WindowHit:
    count: int
    limit: int
    retry_after_seconds: int

    @property
    def allowed(self) -> bool:
        return self.count <= self.limit


class DecisionRateLimiter:
    """Counts execute-decision calls in shared fixed windows.

    Counters live in the ``TtlStore`` under
    ``decision_rate:<scope>[:<id>]:<bucket>`` so several processes can share
    them. The first increment of a bucket sets its expiry to the remainder
    of the window; a new bucket starts from zero at each boundary, so a
    burst straddling a boundary can briefly see up to twice the cap.
    """

    def __init__(
        self,
        store: TtlStore,
        *,
        global_budget: WindowBudget = WindowBudget("global", 100, 1),
        decision_budget: WindowBudget = WindowBudget("decision", 3, 60),
        user_budget: WindowBudget = WindowBudget("user", 60, 60),
        clock: Callable[[], float] = time,
    ) -> None:
        for budget in (global_budget, decision_budget, user_budget):
            budget.validate()
        self._store = store
        self.global_budget = global_budget
        self.decision_budget = decision_budget
        self.user_budget = user_budget
        self._clock = clock

    def _hit(self, budget: WindowBudget, scope_id: str | None = None) -> WindowHit:
        now = self._clock()
        bucket = int(now // budget.window_seconds)
        parts = [RATE_KEY_PREFIX, budget.name]
        if scope_id is not None:
            parts.append(scope_id)
        parts.append(str(bucket))
        key = ":".join(parts)

        count = self._store.incr(key)
        remaining = max(1, math.ceil((bucket + 1) * budget.window_seconds - now))
        if count == 1:
            self._store.expire(key, remaining)
        ttl = self._store.ttl(key)
        retry_after = ttl if ttl > 0 else remaining
        return WindowHit(count=count, limit=budget.limit, retry_after_seconds=retry_after)

    def check_global(self) -> None:
        hit = self._hit(self.global_budget)
        if not hit.allowed:
            logger.warning(
                "decision_rate_limited",
                extra={"extra": {"scope": "global", "count": hit.count, "limit": hit.limit}},
            )
            raise AdmissionError(
                AdmissionReason.GLOBAL_RATE_LIMIT,
                f"global limit of {hit.limit} requests per "
                f"{self.global_budget.window_seconds}s exceeded",
                retry_after=1,
            )

    def check_decision(self, decision_id: str) -> None:
        hit = self._hit(self.decision_budget, decision_id)
        if not hit.allowed:
            logger.warning(
                "decision_rate_limited",
                extra={"extra": {"scope": "decision", "count": hit.count, "limit": hit.limit}},
            )
            raise AdmissionError(
                AdmissionReason.DECISION_RATE_LIMIT,
                f"decision executed more than {hit.limit} times per "
                f"{self.decision_budget.window_seconds}s",
                retry_after=hit.retry_after_seconds,
            )

    def check_user(self, user_id: str) -> None:
        hit = self._hit(self.user_budget, user_id)
        if not hit.allowed:
            logger.warning(
                "decision_rate_limited",
                extra={"extra": {"scope": "user", "count": hit.count, "limit": hit.limit}},
            )
            raise AdmissionError(
                AdmissionReason.USER_RATE_LIMIT,
                f"user exceeded {hit.limit} executions per "
                f"{self.user_budget.window_seconds}s",
                retry_after=hit.retry_after_seconds,
            )
