from __future__ import annotations

import os
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from tradeexec.adapters.exchange import ExchangeAdapter
from tradeexec.config import Settings
from tradeexec.domain.errors import OrderNotFoundError
from tradeexec.domain.models import (
    Balance,
    Credential,
    ExchangeOrderState,
    PlacedOrder,
    PlaceOrderRequest,
)
from tradeexec.obs.metrics import InMemoryMetricsSink, LoggingMetricsSink, set_metrics_sink

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def isolate_settings_from_host_env(monkeypatch: pytest.MonkeyPatch):
    original_env_file = Settings.model_config.get("env_file")
    Settings.model_config["env_file"] = None

    settings_env_keys: set[str] = set()
    for field in Settings.model_fields.values():
        if isinstance(field.alias, str):
            settings_env_keys.add(field.alias)

    for key in list(os.environ):
        if key in settings_env_keys:
            monkeypatch.delenv(key, raising=False)

    yield

    Settings.model_config["env_file"] = original_env_file


@pytest.fixture(autouse=True)
def isolate_default_state_db_per_test(
    isolate_settings_from_host_env: None,
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    del isolate_settings_from_host_env
    monkeypatch.setenv("STATE_DB_PATH", str(tmp_path / "state.sqlite"))


@pytest.fixture(autouse=True)
def restore_default_metrics_sink():
    yield
    set_metrics_sink(LoggingMetricsSink())


@pytest.fixture
def metrics_sink():
    sink = InMemoryMetricsSink()
    set_metrics_sink(sink)
    yield sink
    set_metrics_sink(LoggingMetricsSink())


class FakeClock:
    """Drives both wall-clock seconds and aware datetimes from one value."""

    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def now(self) -> datetime:
        return self.current

    def time(self) -> float:
        return self.current.timestamp()

    def advance(self, seconds: float) -> None:
        self.current = self.current + timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


class FakeExchange(ExchangeAdapter):
    """Scriptable venue; failures are keyed by api_key or order id."""

    def __init__(self, venue: str = "binance") -> None:
        self.venue = venue
        self.place_failures: dict[str, Exception] = {}
        self.query_states: dict[str, ExchangeOrderState | Exception] = {}
        self.cancel_failures: dict[str, Exception] = {}
        self.placed: list[tuple[PlaceOrderRequest, Credential]] = []
        self.queried: list[str] = []
        self.cancelled: list[str] = []
        self._next_id = 1000

    def place_order(self, request: PlaceOrderRequest, credential: Credential) -> PlacedOrder:
        failure = self.place_failures.get(credential.api_key)
        if failure is not None:
            raise failure
        self.placed.append((request, credential))
        self._next_id += 1
        return PlacedOrder(order_id=str(self._next_id), transact_time=T0)

    def query_order(self, symbol: str, order_id: str, credential: Credential) -> ExchangeOrderState:
        self.queried.append(order_id)
        state = self.query_states.get(order_id)
        if isinstance(state, Exception):
            raise state
        if state is None:
            raise OrderNotFoundError("Order does not exist.", code=-2013, venue=self.venue)
        return state

    def cancel_order(self, symbol: str, order_id: str, credential: Credential) -> None:
        failure = self.cancel_failures.get(order_id)
        if failure is not None:
            raise failure
        self.cancelled.append(order_id)

    def get_balances(self, credential: Credential) -> list[Balance]:
        return [Balance(asset="USDT", free=Decimal("100"))]


@pytest.fixture
def fake_exchange() -> FakeExchange:
    return FakeExchange()


@pytest.fixture
def make_credential():
    def _make(user_id: str = "user-aaaa-1111", venue: str = "binance", key: str = "k1"):
        return Credential(user_id=user_id, venue=venue, api_key=key, api_secret=f"secret-{key}")

    return _make
