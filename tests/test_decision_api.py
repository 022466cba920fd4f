from __future__ import annotations

import sqlite3
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from tradeexec.adapters.credentials import StaticCredentialProvider
from tradeexec.adapters.exchange import ExchangeRegistry
from tradeexec.adapters.ttl_store import InMemoryTtlStore
from tradeexec.api.app import create_app
from tradeexec.config import Settings
from tradeexec.domain.decision_codes import IntentStatus
from tradeexec.domain.errors import ExchangeError
from tradeexec.domain.models import Decision, OrderSide, OrderStatus, OrderType
from tradeexec.persistence.sqlite.orders_repo import SqliteOrdersRepo
from tradeexec.runtime.container import build_container
from tradeexec.services.decision_auth import compute_decision_signature

SECRET = "decision-secret"
USER = "user-aaaa-1111"


@pytest.fixture
def container(monkeypatch, clock, fake_exchange, make_credential):
    monkeypatch.setenv("DECISION_SHARED_SECRET", SECRET)
    settings = Settings()
    built = build_container(
        settings,
        exchanges=ExchangeRegistry([fake_exchange]),
        credentials=StaticCredentialProvider([make_credential(USER, key="k1")]),
        store=InMemoryTtlStore(clock=clock.time),
        clock=clock.time,
        now_fn=clock.now,
        sleep_fn=lambda _: None,
    )
    with built.uow_factory() as uow:
        uow.decisions.save(
            Decision(
                decision_id="dec-1",
                user_id=USER,
                venue="binance",
                symbol="BTCUSDT",
                side=OrderSide.BUY,
                order_type=OrderType.LIMIT,
                quantity=Decimal("0.01"),
                price=Decimal("60000"),
                tp_levels=(Decimal("61000"),),
            )
        )
    return built


@pytest.fixture
def client(container):
    with TestClient(create_app(container, start_scheduler=False)) as test_client:
        yield test_client


@pytest.fixture
def signed(clock):
    counter = {"n": 0}

    def _headers(decision_id: str, *, nonce: str | None = None, timestamp: str | None = None):
        counter["n"] += 1
        ts = timestamp or str(int(clock.time()))
        value = nonce or f"nonce-{counter['n']}"
        return {
            "x-decision-signature": compute_decision_signature(SECRET, decision_id, ts, value),
            "x-decision-timestamp": ts,
            "x-decision-nonce": value,
        }

    return _headers


def test_execute_submits_order_and_persists_it(client, container, signed, fake_exchange) -> None:
    response = client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1")
    )

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "SUBMITTED"
    assert body["decision_id"] == "dec-1"
    assert body["order_id"] == "1001"

    request, credential = fake_exchange.placed[0]
    assert request.client_order_id == f"te-{body['intent_id'][:24]}"
    assert credential.user_id == USER

    with container.uow_factory() as uow:
        order = uow.orders.get("1001", "binance")
        intent = uow.intents.get(body["intent_id"])
    assert order is not None
    assert order.status is OrderStatus.NEW
    assert order.tp_levels == (Decimal("61000"),)
    assert order.metadata["decision_id"] == "dec-1"
    assert intent.status is IntentStatus.SUBMITTED
    assert intent.order_id == "1001"


def test_repeat_execution_is_idempotent(client, signed, fake_exchange) -> None:
    first = client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1"))
    second = client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1")
    )

    assert second.status_code == 200
    assert second.json() == {
        "status": "IDEMPOTENT",
        "decision_id": "dec-1",
        "intent_id": first.json()["intent_id"],
    }
    assert len(fake_exchange.placed) == 1


def test_missing_decision_id_is_blocked_before_auth(client) -> None:
    response = client.post("/decisions/execute", json={})

    assert response.status_code == 403
    assert response.json()["reason"] == "EXECUTION_BLOCKED"


@pytest.mark.parametrize(
    ("mutate", "reason"),
    [
        (lambda headers: headers.pop("x-decision-nonce"), "MISSING_AUTH_FIELDS"),
        (lambda headers: headers.update({"x-decision-timestamp": "soon"}), "INVALID_TIMESTAMP"),
        (lambda headers: headers.update({"x-decision-signature": "00" * 32}), "INVALID_SIGNATURE"),
    ],
)
def test_auth_failures_return_401(client, signed, mutate, reason) -> None:
    headers = signed("dec-1")
    mutate(headers)

    response = client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=headers)

    assert response.status_code == 401
    assert response.json()["reason"] == reason
    assert response.json()["statusCode"] == 401


def test_stale_timestamp_and_replay_are_rejected(client, signed, clock) -> None:
    stale = signed("dec-1", timestamp=str(int(clock.time()) - 61))
    response = client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=stale)
    assert response.json()["reason"] == "TIMESTAMP_EXPIRED"

    headers = signed("dec-1", nonce="fixed")
    assert client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=headers
    ).status_code == 200
    replay = client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=headers)
    assert replay.status_code == 401
    assert replay.json()["reason"] == "NONCE_REPLAY_DETECTED"


def test_unknown_decision_returns_404(client, signed) -> None:
    response = client.post(
        "/decisions/execute", json={"decision_id": "missing"}, headers=signed("missing")
    )

    assert response.status_code == 404
    assert response.json()["reason"] == "DECISION_NOT_FOUND"


def test_decision_rate_limit_sets_retry_after(client, signed) -> None:
    for _ in range(3):
        client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1"))

    response = client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1")
    )

    assert response.status_code == 429
    assert response.json()["reason"] == "DECISION_RATE_LIMIT"
    assert response.json()["retryAfter"] == 60
    assert response.headers["Retry-After"] == "60"


def test_placement_failure_marks_intent_failed_without_resubmit(
    client, container, signed, fake_exchange
) -> None:
    fake_exchange.place_failures["k1"] = ExchangeError(
        '{"code":-2015,"msg":"Invalid API-key, IP, or permissions for action."}', status_code=401
    )

    response = client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1")
    )

    assert response.status_code == 502
    assert response.json()["reason"] == "EXECUTION_FAILED"
    assert container.health.is_healthy(USER, "binance") is False

    with container.uow_factory() as uow:
        intent = uow.intents.get_by_decision("dec-1")
    assert intent.status is IntentStatus.FAILED
    assert "Invalid API-key" in intent.last_error

    del fake_exchange.place_failures["k1"]
    retry = client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1"))
    assert retry.json()["status"] == "IDEMPOTENT"
    assert fake_exchange.placed == []


def test_credential_lookup_error_fails_intent_with_one_reason(
    client, container, signed, fake_exchange, monkeypatch
) -> None:
    def broken_lookup(self, user_id, venue):
        raise RuntimeError("credential vault unavailable")

    monkeypatch.setattr(StaticCredentialProvider, "list_credentials", broken_lookup)

    response = client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1")
    )

    assert response.status_code == 502
    assert response.json()["reason"] == "EXECUTION_FAILED"
    with container.uow_factory() as uow:
        intent = uow.intents.get_by_decision("dec-1")
    assert intent.status is IntentStatus.FAILED
    assert "credential vault unavailable" in intent.last_error
    assert fake_exchange.placed == []


def test_order_persistence_error_keeps_venue_order_id_on_failed_intent(
    client, container, signed, fake_exchange, monkeypatch
) -> None:
    def broken_insert(self, order):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(SqliteOrdersRepo, "insert", broken_insert)

    response = client.post(
        "/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1")
    )

    assert response.status_code == 502
    assert response.json()["reason"] == "EXECUTION_FAILED"
    assert len(fake_exchange.placed) == 1
    with container.uow_factory() as uow:
        intent = uow.intents.get_by_decision("dec-1")
    assert intent.status is IntentStatus.FAILED
    assert "order 1001 placed but not recorded" in intent.last_error

def test_admission_metrics_count_outcomes(client, signed, metrics_sink) -> None:
    client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1"))
    client.post("/decisions/execute", json={})

    assert metrics_sink.get("decision_admission_total", outcome="SUBMITTED") == 1
    assert metrics_sink.get("decision_admission_total", outcome="EXECUTION_BLOCKED") == 1


def test_health_and_admin_credential_routes(client, container) -> None:
    container.health.record_failure(USER, "binance", "Invalid API-key, IP, or permissions")
    container.health.record_success("user-bbbb-2222", "binance")

    health = client.get("/health").json()
    assert health["status"] == "ok"
    assert health["reconcile_state"] == "IDLE"
    assert health["scheduler_running"] is False
    assert health["credentials"] == {"total": 2, "healthy": 1, "quarantined": 1}

    listing = client.get("/admin/credential-health").json()
    assert listing["quarantined"] == 1
    assert len(listing["records"]) == 2

    reset = client.post(
        "/admin/credential-health/reset", json={"user_id": "user-aaaa", "exchange": "BINANCE"}
    )
    assert reset.json() == {"reset": 1, "user_id": "user-aaaa", "exchange": "binance"}
    assert container.health.is_healthy(USER, "binance") is True

    invalid = client.post("/admin/credential-health/reset", json={"user_id": "", "exchange": "x"})
    assert invalid.status_code == 422


def test_admin_reconciliation_run_returns_counts(client) -> None:
    response = client.post("/admin/reconciliation/run")

    assert response.status_code == 200
    body = response.json()
    assert body["checked"] == 0
    assert body["skipped"] is False


def test_metrics_route_exposes_admission_counters(client, signed) -> None:
    client.post("/decisions/execute", json={"decision_id": "dec-1"}, headers=signed("dec-1"))

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'decision_admission_total{outcome="SUBMITTED"} 1.0' in response.text


def test_metrics_route_is_404_when_disabled(monkeypatch, clock, fake_exchange) -> None:
    monkeypatch.setenv("DECISION_SHARED_SECRET", SECRET)
    monkeypatch.setenv("METRICS_ENABLED", "false")
    disabled = build_container(
        Settings(),
        exchanges=ExchangeRegistry([fake_exchange]),
        credentials=StaticCredentialProvider([]),
        store=InMemoryTtlStore(clock=clock.time),
        clock=clock.time,
        now_fn=clock.now,
        sleep_fn=lambda _: None,
    )
    assert disabled.metrics is None

    with TestClient(create_app(disabled, start_scheduler=False)) as test_client:
        assert test_client.get("/metrics").status_code == 404
