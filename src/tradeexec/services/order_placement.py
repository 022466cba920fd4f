from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from tradeexec.adapters.credentials import CredentialProvider
from tradeexec.adapters.exchange import ExchangeRegistry
from tradeexec.domain.decision_codes import ExecutionStatus
from tradeexec.domain.errors import PlacementFailedError
from tradeexec.domain.models import (
    Credential,
    Decision,
    Intent,
    Order,
    PlacedOrder,
    PlaceOrderRequest,
    normalize_venue,
)
from tradeexec.logging_context import short_id
from tradeexec.obs.metrics import inc_counter
from tradeexec.persistence.uow import UnitOfWork
from tradeexec.services.credential_health import CredentialHealthManager
from tradeexec.services.execution_errors import classify_exchange_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmitResult:
    status: ExecutionStatus
    order_id: str | None


def client_order_id_for(intent: Intent) -> str:
    return f"te-{intent.intent_id[:24]}"


class OrderPlacementService:
    """Places the order for an accepted intent through the healthiest credential."""

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        credentials: CredentialProvider,
        exchanges: ExchangeRegistry,
        health: CredentialHealthManager,
    ) -> None:
        self._uow_factory = uow_factory
        self._credentials = credentials
        self._exchanges = exchanges
        self._health = health

    def submit(self, intent: Intent, decision: Decision) -> SubmitResult:
        venue = normalize_venue(decision.venue)
        request = PlaceOrderRequest(
            symbol=decision.symbol,
            side=decision.side,
            type=decision.order_type,
            quantity=decision.quantity,
            price=decision.price,
            client_order_id=client_order_id_for(intent),
        )

        try:
            adapter = self._exchanges.get(venue)
            candidates = self._credentials.list_credentials(decision.user_id, venue)
            outcome = self._health.execute_with_fallback(
                candidates,
                lambda credential: adapter.place_order(request, credential),
                operation_name="place_order",
            )
        except Exception as exc:
            self._fail(intent, exc)
            raise PlacementFailedError(intent.intent_id, str(exc)) from exc

        placed: PlacedOrder = outcome.result
        credential: Credential = outcome.credential
        order = Order(
            order_id=placed.order_id,
            exchange=venue,
            symbol=decision.symbol,
            side=decision.side,
            type=decision.order_type,
            quantity=decision.quantity,
            price=decision.price,
            status=placed.status,
            order_timestamp=placed.transact_time,
            user_id=decision.user_id,
            executed_qty=placed.executed_qty,
            client_order_id=request.client_order_id,
            order_role=decision.order_role,
            tp_levels=decision.tp_levels,
            sl_price=decision.sl_price,
            metadata={
                "decision_id": decision.decision_id,
                "intent_id": intent.intent_id,
                "credential_label": credential.label,
            },
        )
        try:
            with self._uow_factory() as uow:
                uow.orders.insert(order)
                uow.intents.mark_submitted(intent.intent_id, placed.order_id)
        except Exception as exc:
            # The venue holds a live order; keep its id on the failed intent.
            message = f"order {placed.order_id} placed but not recorded: {exc}"
            self._fail(intent, exc, message=message)
            raise PlacementFailedError(intent.intent_id, message) from exc

        inc_counter("decision_orders_submitted_total", {"venue": venue})
        logger.info(
            "order_submitted",
            extra={
                "extra": {
                    "intent_id": intent.intent_id,
                    "order_id": placed.order_id,
                    "venue": venue,
                    "symbol": decision.symbol,
                    "user_id": short_id(decision.user_id),
                    "fallback_failures": len(outcome.failed_attempts),
                }
            },
        )
        return SubmitResult(status=ExecutionStatus.SUBMITTED, order_id=placed.order_id)

    def _fail(self, intent: Intent, exc: Exception, *, message: str | None = None) -> None:
        error = message if message is not None else str(exc)
        with self._uow_factory() as uow:
            uow.intents.mark_failed(intent.intent_id, error)
        logger.error(
            "order_submit_failed",
            extra={
                "extra": {
                    "intent_id": intent.intent_id,
                    "error_type": type(exc).__name__,
                    "category": classify_exchange_error(exc).value,
                    "error": error,
                }
            },
        )
