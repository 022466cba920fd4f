from __future__ import annotations

import logging
import threading
import time
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any

from tradeexec.adapters.credentials import CredentialProvider
from tradeexec.adapters.exchange import ExchangeAdapter, ExchangeRegistry, is_order_not_found
from tradeexec.adapters.notifications import OrderCancelledEvent, OrderCancelledNotifier
from tradeexec.domain.errors import ExchangeError
from tradeexec.domain.models import Credential, Order
from tradeexec.logging_context import short_id, with_logging_context, with_run_context
from tradeexec.obs.metrics import inc_counter, set_gauge
from tradeexec.persistence.uow import UnitOfWork
from tradeexec.services.credential_health import CredentialHealthManager, error_text
from tradeexec.services.execution_errors import classify_exchange_error

logger = logging.getLogger(__name__)

STALE_CANCEL_REASON = "stale_order"


class RunState(StrEnum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class ReconcileRunResult:
    checked: int = 0
    cancelled: int = 0
    updated: int = 0
    removed: int = 0
    errors: int = 0
    skipped_users: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)
    duration_ms: int = 0
    skipped: bool = False
    run_id: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "skipped": self.skipped,
            "checked": self.checked,
            "cancelled": self.cancelled,
            "updated": self.updated,
            "removed": self.removed,
            "errors": self.errors,
            "skipped_users": self.skipped_users,
            "duration_ms": self.duration_ms,
            "details": list(self.details),
        }


class _Pacer:
    """Spaces exchange calls within one run."""

    def __init__(self, delay_seconds: float, sleep_fn: Callable[[float], None]) -> None:
        self._delay = delay_seconds
        self._sleep = sleep_fn
        self._calls = 0

    def before_call(self) -> None:
        if self._calls and self._delay > 0:
            self._sleep(self._delay)
        self._calls += 1


class OrderReconciliationService:
    """Converges locally-open entry orders with exchange-side truth.

    Each run pulls open BUY entry orders from the last few days, groups them
    by (user, venue), queries each order with one healthy credential and
    then updates, deletes or cancels the local row. Query and cancel
    outcomes feed credential health; an order the exchange no longer knows
    counts as a credential success and its row is removed.

    Only one run executes at a time. A run requested while another is in
    flight returns an empty result with ``skipped=True``.
    """

    def __init__(
        self,
        *,
        uow_factory: Callable[[], UnitOfWork],
        credentials: CredentialProvider,
        exchanges: ExchangeRegistry,
        health: CredentialHealthManager,
        notifier: OrderCancelledNotifier,
        stale_after_seconds: int = 1200,
        call_delay_ms: int = 150,
        max_order_age_days: int = 3,
        now_fn: Callable[[], datetime] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self._uow_factory = uow_factory
        self._credentials = credentials
        self._exchanges = exchanges
        self._health = health
        self._notifier = notifier
        self.stale_after_seconds = stale_after_seconds
        self.call_delay_ms = call_delay_ms
        self.max_order_age_days = max_order_age_days
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._sleep = sleep_fn
        self._state_lock = threading.Lock()
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    def _transition(self, expected: RunState, new: RunState) -> bool:
        with self._state_lock:
            if self._state is not expected:
                return False
            self._state = new
            return True

    def run_once(self) -> ReconcileRunResult:
        if not self._transition(RunState.IDLE, RunState.RUNNING):
            logger.info("reconcile_run_skipped", extra={"extra": {"cause": "already_running"}})
            return ReconcileRunResult(skipped=True)

        run_id = uuid.uuid4().hex[:12]
        result = ReconcileRunResult(run_id=run_id)
        started = time.monotonic()
        try:
            with with_run_context(run_id):
                self._run(result)
        except Exception as exc:
            result.errors += 1
            result.details.append({"action": "run_failed", "error": str(exc)[:200]})
            logger.error(
                "reconcile_run_failed",
                extra={"extra": {"run_id": run_id, "error_type": type(exc).__name__}},
                exc_info=True,
            )
        finally:
            result.duration_ms = int((time.monotonic() - started) * 1000)
            self._transition(RunState.RUNNING, RunState.IDLE)

        set_gauge("reconcile_run_duration_ms", result.duration_ms, {})
        logger.info(
            "reconcile_run_complete",
            extra={
                "extra": {
                    "run_id": run_id,
                    "checked": result.checked,
                    "cancelled": result.cancelled,
                    "updated": result.updated,
                    "removed": result.removed,
                    "errors": result.errors,
                    "skipped_users": result.skipped_users,
                    "duration_ms": result.duration_ms,
                }
            },
        )
        return result

    def _run(self, result: ReconcileRunResult) -> None:
        since = self._now() - timedelta(days=self.max_order_age_days)
        with self._uow_factory() as uow:
            orders = uow.orders.list_open_entry_orders(since)

        if not orders:
            logger.debug("reconcile_no_open_orders")
            return

        groups: dict[tuple[str | None, str], list[Order]] = defaultdict(list)
        for order in orders:
            groups[(order.user_id, order.exchange)].append(order)

        pacer = _Pacer(self.call_delay_ms / 1000.0, self._sleep)
        for (user_id, venue), group in groups.items():
            with with_logging_context(user_id=short_id(user_id)):
                self._reconcile_group(user_id, venue, group, result, pacer)

    def _reconcile_group(
        self,
        user_id: str | None,
        venue: str,
        orders: list[Order],
        result: ReconcileRunResult,
        pacer: _Pacer,
    ) -> None:
        credential: Credential | None = None
        adapter: ExchangeAdapter | None = None
        if user_id:
            try:
                adapter = self._exchanges.get(venue)
            except ExchangeError:
                logger.warning(
                    "reconcile_no_adapter",
                    extra={"extra": {"venue": venue, "orders": len(orders)}},
                )
                result.skipped_users += 1
                return
            try:
                candidates = self._credentials.list_credentials(user_id, venue)
                credential = self._health.select_healthy_credential(
                    candidates, preferred_user=user_id
                )
            except Exception as exc:
                logger.error(
                    "reconcile_user_skipped",
                    extra={
                        "extra": {
                            "user_id": short_id(user_id),
                            "venue": venue,
                            "orders": len(orders),
                            "cause": "credential_lookup_failed",
                            "error_type": type(exc).__name__,
                        }
                    },
                    exc_info=True,
                )
                result.skipped_users += 1
                return

        if credential is None or adapter is None:
            logger.warning(
                "reconcile_user_skipped",
                extra={
                    "extra": {
                        "user_id": short_id(user_id),
                        "venue": venue,
                        "orders": len(orders),
                        "cause": "no_credentials",
                    }
                },
            )
            result.skipped_users += 1
            return

        for order in orders:
            result.checked += 1
            inc_counter("reconcile_orders_total", {"action": "checked"})
            with with_logging_context(order_id=order.order_id, symbol=order.symbol):
                try:
                    self._reconcile_order(order, adapter, credential, result, pacer)
                except Exception as exc:
                    result.errors += 1
                    inc_counter("reconcile_orders_total", {"action": "error"})
                    result.details.append(
                        {
                            "order_id": order.order_id,
                            "symbol": order.symbol,
                            "action": "error",
                            "error": str(exc)[:200],
                        }
                    )
                    logger.error(
                        "reconcile_order_failed",
                        extra={
                            "extra": {
                                "order_id": order.order_id,
                                "venue": venue,
                                "category": classify_exchange_error(exc).value,
                                "error_type": type(exc).__name__,
                            }
                        },
                        exc_info=True,
                    )

    def _reconcile_order(
        self,
        order: Order,
        adapter: ExchangeAdapter,
        credential: Credential,
        result: ReconcileRunResult,
        pacer: _Pacer,
    ) -> None:
        pacer.before_call()
        try:
            state = adapter.query_order(order.symbol, order.order_id, credential)
        except Exception as exc:
            if is_order_not_found(exc):
                self._health.record_success(credential.user_id, credential.venue)
                self._remove(order, result, reason="not_found_on_query")
                return
            self._health.record_failure(credential.user_id, credential.venue, error_text(exc))
            raise
        self._health.record_success(credential.user_id, credential.venue)

        current = order
        if state.status is not order.status or state.executed_qty != order.executed_qty:
            current = order.with_exchange_state(state)
            with self._uow_factory() as uow:
                uow.orders.update_exchange_state(current)
            result.updated += 1
            inc_counter("reconcile_orders_total", {"action": "updated"})
            result.details.append(
                {
                    "order_id": order.order_id,
                    "symbol": order.symbol,
                    "action": "updated",
                    "from_status": order.status.value,
                    "to_status": state.status.value,
                }
            )
            logger.info(
                "reconcile_order_updated",
                extra={
                    "extra": {
                        "order_id": order.order_id,
                        "from_status": order.status.value,
                        "to_status": state.status.value,
                        "executed_qty": str(state.executed_qty),
                    }
                },
            )
            if not state.status.is_open:
                return

        age_seconds = current.age_seconds(self._now())
        if age_seconds <= self.stale_after_seconds:
            return

        pacer.before_call()
        try:
            adapter.cancel_order(current.symbol, current.order_id, credential)
        except Exception as exc:
            if is_order_not_found(exc):
                self._health.record_success(credential.user_id, credential.venue)
                self._remove(current, result, reason="not_found_on_cancel")
                return
            self._health.record_failure(credential.user_id, credential.venue, error_text(exc))
            raise
        self._health.record_success(credential.user_id, credential.venue)

        self._delete(current)
        age_minutes = int(age_seconds // 60)
        result.cancelled += 1
        inc_counter("reconcile_orders_total", {"action": "cancelled"})
        result.details.append(
            {
                "order_id": current.order_id,
                "symbol": current.symbol,
                "action": "cancelled",
                "age_minutes": age_minutes,
            }
        )
        logger.info(
            "reconcile_stale_order_cancelled",
            extra={"extra": {"order_id": current.order_id, "age_minutes": age_minutes}},
        )
        self._notify_cancelled(current, age_minutes)

    def _remove(self, order: Order, result: ReconcileRunResult, *, reason: str) -> None:
        self._delete(order)
        result.removed += 1
        inc_counter("reconcile_orders_total", {"action": "removed"})
        result.details.append(
            {
                "order_id": order.order_id,
                "symbol": order.symbol,
                "action": "removed",
                "reason": reason,
            }
        )
        logger.info(
            "reconcile_order_removed",
            extra={"extra": {"order_id": order.order_id, "reason": reason}},
        )

    def _delete(self, order: Order) -> None:
        if order.id is None:
            raise ValueError(f"order {order.order_id} has no local row id")
        with self._uow_factory() as uow:
            uow.orders.delete_by_id(order.id)

    def _notify_cancelled(self, order: Order, age_minutes: int) -> None:
        event = OrderCancelledEvent(
            order_id=order.order_id,
            symbol=order.symbol,
            side=order.side.value,
            cancel_reason=STALE_CANCEL_REASON,
            age_minutes=age_minutes,
            timestamp=self._now(),
            exchange=order.exchange,
            user_id=order.user_id,
        )
        try:
            self._notifier.notify_order_cancelled(event)
        except Exception:
            # The cancel stands even when the notification is lost.
            logger.warning(
                "order_cancel_notification_failed",
                extra={"extra": {"order_id": order.order_id}},
                exc_info=True,
            )


class ReconciliationScheduler:
    """Runs ``OrderReconciliationService.run_once`` on a daemon thread.

    The first run happens after ``startup_delay_seconds``, then every
    ``interval_seconds``. ``trigger()`` wakes the loop for an immediate run.
    """

    def __init__(
        self,
        service: OrderReconciliationService,
        *,
        interval_seconds: float = 300.0,
        startup_delay_seconds: float = 15.0,
    ) -> None:
        self._service = service
        self.interval_seconds = interval_seconds
        self.startup_delay_seconds = startup_delay_seconds
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: ReconcileRunResult | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._wake.clear()
        self._thread = threading.Thread(
            target=self._loop, name="OrderReconciliation", daemon=True
        )
        self._thread.start()
        logger.info(
            "reconcile_scheduler_started",
            extra={
                "extra": {
                    "interval_seconds": self.interval_seconds,
                    "startup_delay_seconds": self.startup_delay_seconds,
                }
            },
        )

    def stop(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._stop.set()
        self._wake.set()
        self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("reconcile_scheduler_stopped")

    def trigger(self) -> None:
        self._wake.set()

    def _wait(self, seconds: float) -> None:
        self._wake.wait(timeout=seconds)
        self._wake.clear()

    def _loop(self) -> None:
        self._wait(self.startup_delay_seconds)
        while not self._stop.is_set():
            try:
                self.last_result = self._service.run_once()
            except Exception:
                logger.exception("reconcile_scheduler_iteration_failed")
            if self._stop.is_set():
                break
            self._wait(self.interval_seconds)
