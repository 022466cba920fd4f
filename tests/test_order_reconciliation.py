from __future__ import annotations

import threading
import time
from datetime import timedelta
from decimal import Decimal

import pytest

from tradeexec.adapters.credentials import StaticCredentialProvider
from tradeexec.adapters.exchange import ExchangeRegistry
from tradeexec.adapters.notifications import OrderCancelledEvent
from tradeexec.domain.errors import ExchangeError, OrderNotFoundError
from tradeexec.domain.models import (
    ExchangeOrderState,
    Order,
    OrderRole,
    OrderSide,
    OrderStatus,
    OrderType,
)
from tradeexec.persistence.sqlite.orders_repo import SqliteOrdersRepo
from tradeexec.persistence.uow import UnitOfWorkFactory
from tradeexec.services.credential_health import CredentialHealthManager
from tradeexec.services.order_reconciliation import (
    OrderReconciliationService,
    ReconciliationScheduler,
    RunState,
)

USER = "user-aaaa-1111"


class RecordingNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[OrderCancelledEvent] = []
        self.fail = fail

    def notify_order_cancelled(self, event: OrderCancelledEvent) -> None:
        self.events.append(event)
        if self.fail:
            raise ExchangeError("webhook down")


@pytest.fixture
def uow_factory(tmp_path) -> UnitOfWorkFactory:
    return UnitOfWorkFactory(str(tmp_path / "state.sqlite"))


@pytest.fixture
def seed_order(uow_factory, clock):
    def _seed(order_id: str, *, age_minutes: float, user_id: str | None = USER, **overrides):
        order = Order(
            order_id=order_id,
            exchange="binance",
            symbol="BTCUSDT",
            side=OrderSide.BUY,
            type=OrderType.LIMIT,
            quantity=Decimal("0.01"),
            price=Decimal("60000"),
            status=OrderStatus.NEW,
            order_timestamp=clock.now() - timedelta(minutes=age_minutes),
            user_id=user_id,
            order_role=OrderRole.ENTRY,
            **overrides,
        )
        with uow_factory() as uow:
            return uow.orders.insert(order)

    return _seed


@pytest.fixture
def build_service(uow_factory, clock, fake_exchange, make_credential):
    def _build(*, notifier=None, credentials=None, exchanges=None, health=None, sleeps=None):
        return OrderReconciliationService(
            uow_factory=uow_factory,
            credentials=(
                credentials
                if credentials is not None
                else StaticCredentialProvider([make_credential(USER)])
            ),
            exchanges=exchanges or ExchangeRegistry([fake_exchange]),
            health=health or CredentialHealthManager(now_fn=clock.now),
            notifier=notifier or RecordingNotifier(),
            now_fn=clock.now,
            sleep_fn=(sleeps.append if sleeps is not None else lambda _: None),
        )

    return _build


def _open_state(order_id: str, status: OrderStatus = OrderStatus.NEW, qty: str = "0"):
    return ExchangeOrderState(
        order_id=order_id, symbol="BTCUSDT", status=status, executed_qty=Decimal(qty)
    )


def _stored_ids(uow_factory) -> list[str]:
    with uow_factory() as uow:
        return [order.order_id for order in uow.orders.list_for_user(USER)]


def test_stale_open_order_is_cancelled_and_notified(
    build_service, seed_order, fake_exchange, uow_factory
) -> None:
    seed_order("o-stale", age_minutes=21)
    fake_exchange.query_states["o-stale"] = _open_state("o-stale")
    notifier = RecordingNotifier()

    result = build_service(notifier=notifier).run_once()

    assert (result.checked, result.cancelled, result.errors) == (1, 1, 0)
    assert fake_exchange.cancelled == ["o-stale"]
    assert _stored_ids(uow_factory) == []
    event = notifier.events[0]
    assert event.cancel_reason == "stale_order"
    assert event.age_minutes == 21
    assert event.to_payload()["exchange"] == "BINANCE"
    assert event.user_id == USER


def test_recent_open_order_is_left_alone(build_service, seed_order, fake_exchange, uow_factory):
    seed_order("o-fresh", age_minutes=19)
    fake_exchange.query_states["o-fresh"] = _open_state("o-fresh")

    result = build_service().run_once()

    assert (result.checked, result.cancelled, result.updated) == (1, 0, 0)
    assert fake_exchange.cancelled == []
    assert _stored_ids(uow_factory) == ["o-fresh"]


def test_filled_order_is_updated_not_cancelled(
    build_service, seed_order, fake_exchange, uow_factory
) -> None:
    seed_order("o-filled", age_minutes=45)
    fake_exchange.query_states["o-filled"] = _open_state("o-filled", OrderStatus.FILLED, "0.01")

    result = build_service().run_once()

    assert (result.updated, result.cancelled) == (1, 0)
    assert fake_exchange.cancelled == []
    with uow_factory() as uow:
        stored = uow.orders.get("o-filled", "binance")
    assert stored.status is OrderStatus.FILLED
    assert stored.executed_qty == Decimal("0.01")


def test_partial_fill_updates_then_cancels_when_stale(
    build_service, seed_order, fake_exchange, uow_factory
) -> None:
    seed_order("o-partial", age_minutes=30)
    fake_exchange.query_states["o-partial"] = _open_state(
        "o-partial", OrderStatus.PARTIALLY_FILLED, "0.004"
    )

    result = build_service().run_once()

    assert (result.updated, result.cancelled) == (1, 1)
    assert _stored_ids(uow_factory) == []


def test_order_unknown_to_exchange_is_removed(
    build_service, seed_order, fake_exchange, uow_factory, clock
) -> None:
    seed_order("o-gone", age_minutes=5)
    health = CredentialHealthManager(now_fn=clock.now)

    result = build_service(health=health).run_once()

    assert result.removed == 1
    assert result.details[0]["reason"] == "not_found_on_query"
    assert _stored_ids(uow_factory) == []
    assert health.get_health(USER, "binance").total_successes == 1


def test_not_found_on_cancel_removes_row(
    build_service, seed_order, fake_exchange, uow_factory
) -> None:
    seed_order("o-race", age_minutes=25)
    fake_exchange.query_states["o-race"] = _open_state("o-race")
    fake_exchange.cancel_failures["o-race"] = OrderNotFoundError("Unknown order sent.")
    notifier = RecordingNotifier()

    result = build_service(notifier=notifier).run_once()

    assert (result.removed, result.cancelled) == (1, 0)
    assert notifier.events == []
    assert _stored_ids(uow_factory) == []


def test_query_error_counts_and_feeds_health(
    build_service, seed_order, fake_exchange, uow_factory, clock
) -> None:
    seed_order("o-err", age_minutes=25)
    seed_order("o-ok", age_minutes=1)
    fake_exchange.query_states["o-err"] = ExchangeError("503 Service Unavailable", status_code=503)
    fake_exchange.query_states["o-ok"] = _open_state("o-ok")
    health = CredentialHealthManager(now_fn=clock.now)

    result = build_service(health=health).run_once()

    assert (result.checked, result.errors) == (2, 1)
    assert sorted(_stored_ids(uow_factory)) == ["o-err", "o-ok"]
    assert health.get_health(USER, "binance").total_failures == 1


def test_user_without_credentials_is_skipped(build_service, seed_order, fake_exchange) -> None:
    seed_order("o-1", age_minutes=30)
    seed_order("o-2", age_minutes=30, user_id=None)

    result = build_service(credentials=StaticCredentialProvider()).run_once()

    assert result.skipped_users == 2
    assert result.checked == 0
    assert fake_exchange.queried == []


def test_missing_adapter_skips_group(build_service, seed_order) -> None:
    seed_order("o-1", age_minutes=30)

    result = build_service(exchanges=ExchangeRegistry()).run_once()

    assert result.skipped_users == 1


class FailingForUserProvider(StaticCredentialProvider):
    def __init__(self, broken_user: str, credentials) -> None:
        super().__init__(credentials)
        self.broken_user = broken_user

    def list_credentials(self, user_id: str, venue: str):
        if user_id == self.broken_user:
            raise RuntimeError("vault timeout")
        return super().list_credentials(user_id, venue)


def test_credential_lookup_failure_skips_only_that_user(
    build_service, seed_order, fake_exchange, make_credential
) -> None:
    seed_order("o-a", age_minutes=5)
    seed_order("o-b", age_minutes=4, user_id="user-bbbb-2222")
    fake_exchange.query_states["o-b"] = _open_state("o-b")
    provider = FailingForUserProvider(
        USER, [make_credential(USER), make_credential("user-bbbb-2222", key="k2")]
    )

    result = build_service(credentials=provider).run_once()

    assert result.skipped_users == 1
    assert result.checked == 1
    assert fake_exchange.queried == ["o-b"]


def test_run_level_failure_is_reported_not_raised(build_service, monkeypatch) -> None:
    def broken_listing(self, since):
        raise RuntimeError("database is locked")

    monkeypatch.setattr(SqliteOrdersRepo, "list_open_entry_orders", broken_listing)
    service = build_service()

    result = service.run_once()

    assert result.errors == 1
    assert result.details == [{"action": "run_failed", "error": "database is locked"}]
    assert service.state is RunState.IDLE

def test_notifier_failure_does_not_undo_cancel(
    build_service, seed_order, fake_exchange, uow_factory
) -> None:
    seed_order("o-stale", age_minutes=40)
    fake_exchange.query_states["o-stale"] = _open_state("o-stale")

    result = build_service(notifier=RecordingNotifier(fail=True)).run_once()

    assert result.cancelled == 1
    assert result.errors == 0
    assert _stored_ids(uow_factory) == []


def test_calls_are_paced_within_a_run(build_service, seed_order, fake_exchange) -> None:
    for index in range(3):
        order_id = f"o-{index}"
        seed_order(order_id, age_minutes=1)
        fake_exchange.query_states[order_id] = _open_state(order_id)
    sleeps: list[float] = []

    build_service(sleeps=sleeps).run_once()

    assert sleeps == [0.15, 0.15]


def test_orders_outside_lookback_are_ignored(build_service, seed_order, fake_exchange) -> None:
    seed_order("o-ancient", age_minutes=60 * 24 * 4)

    result = build_service().run_once()

    assert result.checked == 0
    assert fake_exchange.queried == []


def test_concurrent_run_is_skipped(build_service, seed_order, fake_exchange) -> None:
    seed_order("o-1", age_minutes=1)
    entered = threading.Event()
    release = threading.Event()

    def blocking_query(symbol, order_id, credential):
        entered.set()
        release.wait(timeout=5)
        return _open_state(order_id)

    fake_exchange.query_order = blocking_query
    service = build_service()
    outcome: dict[str, object] = {}
    worker = threading.Thread(target=lambda: outcome.setdefault("first", service.run_once()))
    worker.start()
    assert entered.wait(timeout=5)

    assert service.state is RunState.RUNNING
    second = service.run_once()
    release.set()
    worker.join(timeout=5)

    assert second.skipped is True
    assert (second.checked, second.cancelled, second.errors) == (0, 0, 0)
    assert outcome["first"].checked == 1
    assert service.state is RunState.IDLE


def test_scheduler_runs_and_stops(build_service) -> None:
    scheduler = ReconciliationScheduler(
        build_service(), interval_seconds=3600, startup_delay_seconds=0
    )
    scheduler.start()
    deadline = time.monotonic() + 5
    while scheduler.last_result is None and time.monotonic() < deadline:
        time.sleep(0.01)

    assert scheduler.running is True
    assert scheduler.last_result is not None
    scheduler.stop()
    assert scheduler.running is False


def test_restart_waits_for_startup_delay_again(build_service) -> None:
    scheduler = ReconciliationScheduler(
        build_service(), interval_seconds=3600, startup_delay_seconds=0
    )
    scheduler.start()
    deadline = time.monotonic() + 5
    while scheduler.last_result is None and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop()

    scheduler.last_result = None
    scheduler.startup_delay_seconds = 3600
    scheduler.start()
    time.sleep(0.2)

    assert scheduler.last_result is None
    scheduler.stop()
