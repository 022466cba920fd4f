from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from tradeexec.domain.decision_codes import IntentStatus


def parse_decimal(value: object) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        normalized = value.strip().replace(",", ".")
        return Decimal(normalized or "0")
    raise TypeError(f"Cannot parse decimal from {type(value)!r}")


def normalize_venue(venue: str) -> str:
    return str(venue).strip().lower()


class OrderSide(StrEnum):
    BUY = "BUY"
    SELL = "SELL"


class OrderType(StrEnum):
    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"


class OrderStatus(StrEnum):
    NEW = "NEW"
    PARTIALLY_FILLED = "PARTIALLY_FILLED"
    FILLED = "FILLED"
    CANCELED = "CANCELED"
    PENDING_CANCEL = "PENDING_CANCEL"
    REJECTED = "REJECTED"
    EXPIRED = "EXPIRED"

    @property
    def is_open(self) -> bool:
        return self in OPEN_ORDER_STATUSES


OPEN_ORDER_STATUSES = frozenset({OrderStatus.NEW, OrderStatus.PARTIALLY_FILLED})

_STATUS_ALIASES = {
    "new": OrderStatus.NEW,
    "open": OrderStatus.NEW,
    "live": OrderStatus.NEW,
    "init": OrderStatus.NEW,
    "partially_filled": OrderStatus.PARTIALLY_FILLED,
    "partial_fill": OrderStatus.PARTIALLY_FILLED,
    "partial": OrderStatus.PARTIALLY_FILLED,
    "filled": OrderStatus.FILLED,
    "full_fill": OrderStatus.FILLED,
    "closed": OrderStatus.FILLED,
    "canceled": OrderStatus.CANCELED,
    "cancelled": OrderStatus.CANCELED,
    "pending_cancel": OrderStatus.PENDING_CANCEL,
    "rejected": OrderStatus.REJECTED,
    "expired": OrderStatus.EXPIRED,
    "expired_in_match": OrderStatus.EXPIRED,
}


def normalize_order_status(value: str | OrderStatus) -> OrderStatus:
    if isinstance(value, OrderStatus):
        return value
    token = str(value).strip().lower().replace("-", "_").replace(" ", "_")
    status = _STATUS_ALIASES.get(token)
    if status is None:
        raise ValueError(f"unrecognized order status: {value!r}")
    return status


class OrderRole(StrEnum):
    ENTRY = "ENTRY"
    TP1 = "TP1"
    TP2 = "TP2"
    SL = "SL"
    MANUAL_BUY = "MANUAL_BUY"
    MANUAL_SELL = "MANUAL_SELL"


@dataclass(frozen=True)
class Credential:
    user_id: str
    venue: str
    api_key: str = field(repr=False)
    api_secret: str = field(repr=False)
    passphrase: str | None = field(default=None, repr=False)
    label: str | None = None

    def __post_init__(self) -> None:
        if not self.user_id:
            raise ValueError("credential user_id is required")
        object.__setattr__(self, "venue", normalize_venue(self.venue))


@dataclass(frozen=True)
class Order:
    order_id: str
    exchange: str
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Decimal
    price: Decimal | None
    status: OrderStatus
    order_timestamp: datetime
    user_id: str | None
    executed_qty: Decimal = Decimal("0")
    client_order_id: str | None = None
    parent_order_id: str | None = None
    order_group_id: str | None = None
    order_role: OrderRole | None = None
    tp_levels: tuple[Decimal, ...] = ()
    sl_price: Decimal | None = None
    filled_timestamp: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None

    def age_seconds(self, now: datetime | None = None) -> float:
        reference = now or datetime.now(UTC)
        return max(0.0, (reference - self.order_timestamp).total_seconds())

    def with_exchange_state(self, state: ExchangeOrderState) -> Order:
        filled_timestamp = self.filled_timestamp
        if state.status is OrderStatus.FILLED and self.status is not OrderStatus.FILLED:
            filled_timestamp = state.update_time or datetime.now(UTC)
        return replace(
            self,
            status=state.status,
            executed_qty=state.executed_qty,
            filled_timestamp=filled_timestamp,
        )


@dataclass(frozen=True)
class Decision:
    """Read-only view of an upstream trading decision."""

    decision_id: str
    user_id: str
    venue: str
    symbol: str
    side: OrderSide
    order_type: OrderType
    quantity: Decimal
    price: Decimal | None = None
    order_role: OrderRole = OrderRole.ENTRY
    tp_levels: tuple[Decimal, ...] = ()
    sl_price: Decimal | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class PlaceOrderRequest(BaseModel):
    symbol: str
    side: OrderSide
    type: OrderType
    quantity: Decimal
    price: Decimal | None = None
    client_order_id: str | None = None


class PlacedOrder(BaseModel):
    order_id: str
    status: OrderStatus = OrderStatus.NEW
    executed_qty: Decimal = Decimal("0")
    transact_time: datetime = Field(default_factory=lambda: datetime.now(UTC))


class ExchangeOrderState(BaseModel):
    order_id: str
    symbol: str
    status: OrderStatus
    executed_qty: Decimal = Decimal("0")
    update_time: datetime | None = None


class Balance(BaseModel):
    asset: str
    free: Decimal
    locked: Decimal = Decimal("0")


@dataclass(frozen=True)
class Intent:
    """Local record that a decision was accepted for execution.

    ``decision_id`` is unique, so one decision yields at most one intent.
    """

    intent_id: str
    decision_id: str
    user_id: str
    venue: str
    status: IntentStatus
    order_id: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
