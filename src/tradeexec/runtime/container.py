from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from tradeexec.adapters.credentials import CredentialProvider, StaticCredentialProvider
from tradeexec.adapters.exchange import ExchangeRegistry
from tradeexec.adapters.notifications import (
    LoggingNotifier,
    OrderCancelledNotifier,
    WebhookNotifier,
)
from tradeexec.adapters.ttl_store import InMemoryTtlStore, TtlStore
from tradeexec.config import Settings
from tradeexec.obs.metrics import set_metrics_sink
from tradeexec.obs.prometheus import PrometheusMetricsSink
from tradeexec.persistence.uow import UnitOfWorkFactory
from tradeexec.services.credential_classifier import InvalidCredentialClassifier
from tradeexec.services.credential_health import CredentialHealthManager
from tradeexec.services.decision_auth import DecisionAuthGuard
from tradeexec.services.decision_execution import DecisionExecutionService
from tradeexec.services.intent_service import IntentService
from tradeexec.services.order_placement import OrderPlacementService
from tradeexec.services.order_reconciliation import (
    OrderReconciliationService,
    ReconciliationScheduler,
)
from tradeexec.services.rate_limiter import DecisionRateLimiter, WindowBudget

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: TtlStore
    health: CredentialHealthManager
    credentials: CredentialProvider
    exchanges: ExchangeRegistry
    notifier: OrderCancelledNotifier
    uow_factory: UnitOfWorkFactory
    execution: DecisionExecutionService
    reconciliation: OrderReconciliationService
    scheduler: ReconciliationScheduler
    metrics: PrometheusMetricsSink | None = None

    def close(self) -> None:
        self.scheduler.stop()
        self.exchanges.close()
        close = getattr(self.notifier, "close", None)
        if callable(close):
            close()


def build_notifier(settings: Settings) -> OrderCancelledNotifier:
    if not settings.notify_webhook_url:
        return LoggingNotifier()
    secret = (
        settings.notify_webhook_secret.get_secret_value()
        if settings.notify_webhook_secret is not None
        else None
    )
    return WebhookNotifier(
        settings.notify_webhook_url,
        secret=secret,
        timeout_seconds=settings.notify_timeout_seconds,
    )


def build_container(
    settings: Settings,
    *,
    exchanges: ExchangeRegistry | None = None,
    credentials: CredentialProvider | None = None,
    store: TtlStore | None = None,
    notifier: OrderCancelledNotifier | None = None,
    classifier: InvalidCredentialClassifier | None = None,
    clock: Callable[[], float] = time.time,
    now_fn: Callable[[], datetime] | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> Container:
    """Wire every service from ``settings``.

    Venue adapters are supplied by the caller; the core ships none.
    """
    if credentials is None:
        credentials = (
            StaticCredentialProvider.from_json_file(settings.credentials_file)
            if settings.credentials_file
            else StaticCredentialProvider()
        )
    exchanges = exchanges or ExchangeRegistry()
    store = store if store is not None else InMemoryTtlStore()
    notifier = notifier or build_notifier(settings)
    uow_factory = UnitOfWorkFactory(settings.state_db_path)
    metrics = PrometheusMetricsSink() if settings.metrics_enabled else None
    if metrics is not None:
        set_metrics_sink(metrics)

    health = CredentialHealthManager(
        quarantine_threshold=settings.quarantine_threshold,
        quarantine_duration_seconds=settings.quarantine_duration_seconds,
        classifier=classifier,
        now_fn=now_fn,
    )
    guard = DecisionAuthGuard(
        settings.decision_secret(),
        store,
        timestamp_tolerance_seconds=settings.timestamp_tolerance_seconds,
        nonce_ttl_seconds=settings.nonce_ttl_seconds,
        clock=clock,
    )
    rate_limiter = DecisionRateLimiter(
        store,
        global_budget=WindowBudget("global", settings.global_rate_limit_per_second, 1),
        decision_budget=WindowBudget("decision", settings.decision_rate_limit_per_minute, 60),
        user_budget=WindowBudget("user", settings.user_rate_limit_per_minute, 60),
        clock=clock,
    )
    placement = OrderPlacementService(uow_factory, credentials, exchanges, health)
    execution = DecisionExecutionService(
        guard=guard,
        rate_limiter=rate_limiter,
        intents=IntentService(uow_factory, placement),
        uow_factory=uow_factory,
    )
    reconciliation = OrderReconciliationService(
        uow_factory=uow_factory,
        credentials=credentials,
        exchanges=exchanges,
        health=health,
        notifier=notifier,
        stale_after_seconds=settings.stale_order_timeout_seconds,
        call_delay_ms=settings.reconcile_call_delay_ms,
        max_order_age_days=settings.reconcile_max_order_age_days,
        now_fn=now_fn,
        sleep_fn=sleep_fn,
    )
    scheduler = ReconciliationScheduler(
        reconciliation,
        interval_seconds=settings.reconcile_interval_seconds,
        startup_delay_seconds=settings.reconcile_startup_delay_seconds,
    )
    logger.info(
        "container_built",
        extra={
            "extra": {
                "db_path": settings.state_db_path,
                "venues": exchanges.venues(),
                "notifier": type(notifier).__name__,
                "reconcile_enabled": settings.reconcile_enabled,
            }
        },
    )
    return Container(
        settings=settings,
        store=store,
        health=health,
        credentials=credentials,
        exchanges=exchanges,
        notifier=notifier,
        uow_factory=uow_factory,
        execution=execution,
        reconciliation=reconciliation,
        scheduler=scheduler,
        metrics=metrics,
    )
