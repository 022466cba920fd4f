from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from tradeexec.domain.decision_codes import AdmissionReason, ExecutionStatus, IntentCreateStatus
from tradeexec.domain.errors import AdmissionError, PlacementFailedError
from tradeexec.logging_context import short_id, with_logging_context
from tradeexec.obs.metrics import inc_counter
from tradeexec.persistence.uow import UnitOfWork
from tradeexec.services.decision_auth import DecisionAuthGuard
from tradeexec.services.intent_service import IntentService
from tradeexec.services.rate_limiter import DecisionRateLimiter

logger = logging.getLogger(__name__)


class DecisionExecutionService:
    """Admission pipeline for execute-decision calls.

    Checks run in a fixed order and the first failure wins, raising
    ``AdmissionError`` with exactly one reason:

    1. decision id present (403 EXECUTION_BLOCKED)
    2. auth headers, freshness, nonce, signature (401)
    3. global and per-decision rate limits (429)
    4. decision exists (404)
    5. per-user rate limit (429)

    An accepted call converts the decision into an intent once; repeated
    calls for the same decision answer ``IDEMPOTENT`` without placing a
    second order.
    """

    def __init__(
        self,
        *,
        guard: DecisionAuthGuard,
        rate_limiter: DecisionRateLimiter,
        intents: IntentService,
        uow_factory: Callable[[], UnitOfWork],
    ) -> None:
        self._guard = guard
        self._rate_limiter = rate_limiter
        self._intents = intents
        self._uow_factory = uow_factory

    def execute(
        self,
        decision_id: str | None,
        *,
        signature: str | None,
        timestamp: str | None,
        nonce: str | None,
    ) -> dict[str, Any]:
        try:
            response = self._execute(decision_id, signature, timestamp, nonce)
        except AdmissionError as exc:
            inc_counter("decision_admission_total", {"outcome": exc.reason.value})
            raise
        inc_counter("decision_admission_total", {"outcome": str(response["status"])})
        return response

    def _execute(
        self,
        decision_id: str | None,
        signature: str | None,
        timestamp: str | None,
        nonce: str | None,
    ) -> dict[str, Any]:
        if not decision_id:
            logger.warning("decision_execution_blocked", extra={"extra": {"cause": "no_decision_id"}})
            raise AdmissionError(
                AdmissionReason.EXECUTION_BLOCKED,
                "execution requires a decision_id",
            )

        with with_logging_context(decision_id=decision_id):
            self._guard.verify(decision_id, signature, timestamp, nonce)
            self._rate_limiter.check_global()
            self._rate_limiter.check_decision(decision_id)

            with self._uow_factory() as uow:
                decision = uow.decisions.find_by_id(decision_id)
            if decision is None:
                raise AdmissionError(
                    AdmissionReason.DECISION_NOT_FOUND,
                    f"decision {decision_id} not found",
                )

            with with_logging_context(user_id=short_id(decision.user_id), symbol=decision.symbol):
                self._rate_limiter.check_user(decision.user_id)

                intent, created = self._intents.create_from_decision(decision)
                if created is IntentCreateStatus.ALREADY_EXISTS:
                    return {
                        "status": ExecutionStatus.IDEMPOTENT.value,
                        "decision_id": decision_id,
                        "intent_id": intent.intent_id,
                    }

                try:
                    result = self._intents.submit(intent.intent_id)
                except PlacementFailedError as exc:
                    raise AdmissionError(AdmissionReason.EXECUTION_FAILED, str(exc)) from exc

        response: dict[str, Any] = {
            "status": result.status.value,
            "decision_id": decision_id,
            "intent_id": intent.intent_id,
        }
        if result.order_id is not None:
            response["order_id"] = result.order_id
        return response
