from __future__ import annotations

from datetime import datetime
from typing import Protocol

from tradeexec.domain.decision_codes import IntentCreateStatus
from tradeexec.domain.models import Decision, Intent, Order


class DecisionSource(Protocol):
    def find_by_id(self, decision_id: str) -> Decision | None: ...


class IntentsRepoProtocol(Protocol):
    def create_for_decision(self, decision: Decision) -> tuple[Intent, IntentCreateStatus]: ...

    def get(self, intent_id: str) -> Intent | None: ...

    def get_by_decision(self, decision_id: str) -> Intent | None: ...

    def mark_submitted(self, intent_id: str, order_id: str) -> None: ...

    def mark_failed(self, intent_id: str, error: str) -> None: ...


class OrdersRepoProtocol(Protocol):
    def insert(self, order: Order) -> Order: ...

    def get(self, order_id: str, exchange: str) -> Order | None: ...

    def list_open_entry_orders(self, since: datetime) -> list[Order]: ...

    def list_for_user(self, user_id: str) -> list[Order]: ...

    def update_exchange_state(self, order: Order) -> None: ...

    def delete_by_id(self, row_id: int) -> bool: ...
