from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable

from tradeexec.domain.errors import ExchangeError, OrderNotFoundError
from tradeexec.domain.models import (
    Balance,
    Credential,
    ExchangeOrderState,
    PlacedOrder,
    PlaceOrderRequest,
    normalize_venue,
)

_NOT_FOUND_MARKERS = (
    "UNKNOWN_ORDER",
    "ORDER_NOT_FOUND",
    "ORDER DOES NOT EXIST",
    "UNKNOWN ORDER SENT",
    "-2011",
    "-2013",
)


class ExchangeAdapter(ABC):
    """Signed access to one venue.

    Request signing, transport and response normalization belong to the
    concrete adapter. Implementations must bound every call with a timeout
    and raise ``ExchangeError`` (or ``OrderNotFoundError``) for venue-side
    failures; the error message is inspected for invalid-credential codes.
    """

    venue: str

    @abstractmethod
    def place_order(self, request: PlaceOrderRequest, credential: Credential) -> PlacedOrder:
        raise NotImplementedError

    @abstractmethod
    def cancel_order(self, symbol: str, order_id: str, credential: Credential) -> None:
        raise NotImplementedError

    @abstractmethod
    def query_order(self, symbol: str, order_id: str, credential: Credential) -> ExchangeOrderState:
        raise NotImplementedError

    @abstractmethod
    def get_balances(self, credential: Credential) -> list[Balance]:
        raise NotImplementedError

    def close(self) -> None:
        """Release resources associated with the adapter."""
        return None


class ExchangeRegistry:
    def __init__(self, adapters: Iterable[ExchangeAdapter] = ()) -> None:
        self._adapters: dict[str, ExchangeAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ExchangeAdapter) -> None:
        self._adapters[normalize_venue(adapter.venue)] = adapter

    def get(self, venue: str) -> ExchangeAdapter:
        adapter = self._adapters.get(normalize_venue(venue))
        if adapter is None:
            raise ExchangeError(f"no adapter registered for venue {venue!r}", venue=venue)
        return adapter

    def venues(self) -> list[str]:
        return sorted(self._adapters)

    def close(self) -> None:
        for adapter in self._adapters.values():
            adapter.close()


def is_order_not_found(exc: BaseException) -> bool:
    if isinstance(exc, OrderNotFoundError):
        return True
    text = str(exc).upper()
    return any(marker in text for marker in _NOT_FOUND_MARKERS)
