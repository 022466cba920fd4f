from __future__ import annotations

import logging
from collections.abc import Callable

from tradeexec.domain.decision_codes import ExecutionStatus, IntentCreateStatus, IntentStatus
from tradeexec.domain.models import Decision, Intent
from tradeexec.persistence.uow import UnitOfWork
from tradeexec.services.order_placement import OrderPlacementService, SubmitResult

logger = logging.getLogger(__name__)


class IntentService:
    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        placement: OrderPlacementService,
    ) -> None:
        self._uow_factory = uow_factory
        self._placement = placement

    def create_from_decision(self, decision: Decision) -> tuple[Intent, IntentCreateStatus]:
        with self._uow_factory() as uow:
            intent, status = uow.intents.create_for_decision(decision)
        logger.info(
            "intent_created" if status is IntentCreateStatus.CREATED else "intent_exists",
            extra={
                "extra": {
                    "intent_id": intent.intent_id,
                    "decision_id": decision.decision_id,
                    "intent_status": intent.status.value,
                }
            },
        )
        return intent, status

    def submit(self, intent_id: str) -> SubmitResult:
        """Place the order for a CREATED intent.

        An intent that was already submitted or failed is never placed
        again; the stored outcome is returned (or ``ValueError`` for a
        failed one) so a decision executes at most once.
        """
        with self._uow_factory() as uow:
            intent = uow.intents.get(intent_id)
            decision = uow.decisions.find_by_id(intent.decision_id) if intent else None
        if intent is None:
            raise KeyError(f"unknown intent {intent_id!r}")
        if intent.status is IntentStatus.SUBMITTED:
            return SubmitResult(status=ExecutionStatus.IDEMPOTENT, order_id=intent.order_id)
        if intent.status is IntentStatus.FAILED:
            raise ValueError(f"intent {intent_id} already failed: {intent.last_error}")
        if decision is None:
            raise KeyError(f"decision {intent.decision_id!r} for intent {intent_id!r} not found")
        return self._placement.submit(intent, decision)
