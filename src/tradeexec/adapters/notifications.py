from __future__ import annotations

import hashlib
import hmac
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx

from tradeexec.logging_context import short_id
from tradeexec.services.retry import BackoffPolicy, RetryAttempt, retry_with_backoff

logger = logging.getLogger(__name__)

WEBHOOK_BACKOFF = BackoffPolicy(max_attempts=3, base_delay_ms=1000, max_delay_ms=4000)


@dataclass(frozen=True)
class OrderCancelledEvent:
    order_id: str
    symbol: str
    side: str
    cancel_reason: str
    age_minutes: int | None
    timestamp: datetime
    exchange: str
    user_id: str | None

    def to_payload(self) -> dict[str, object]:
        return {
            "order_id": self.order_id,
            "symbol": self.symbol,
            "side": self.side,
            "cancel_reason": self.cancel_reason,
            "age_minutes": self.age_minutes,
            "timestamp": self.timestamp.isoformat(),
            "exchange": self.exchange.upper(),
            "user_id": self.user_id,
        }


class OrderCancelledNotifier(Protocol):
    def notify_order_cancelled(self, event: OrderCancelledEvent) -> None: ...


class LoggingNotifier:
    def notify_order_cancelled(self, event: OrderCancelledEvent) -> None:
        logger.info(
            "order_cancelled_notification",
            extra={
                "extra": {
                    **event.to_payload(),
                    "user_id": short_id(event.user_id),
                }
            },
        )


class _RetryableWebhookStatus(Exception):
    def __init__(self, response: httpx.Response) -> None:
        super().__init__(f"webhook responded {response.status_code}")
        self.response = response


def sign_webhook_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


class WebhookNotifier:
    """Pushes cancellation events to the orchestrator webhook (``<base>/order/cancelled``)."""

    def __init__(
        self,
        base_url: str,
        *,
        secret: str | None = None,
        timeout_seconds: float = 5.0,
        client: httpx.Client | None = None,
        sleep_fn: Callable[[float], None] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._secret = secret
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout_seconds)
        self._sleep_fn = sleep_fn

    def _post(self, path: str, payload: dict[str, object]) -> None:
        body = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        headers = {"Content-Type": "application/json"}
        if self._secret:
            headers["x-webhook-signature"] = sign_webhook_body(self._secret, body)

        def _send() -> None:
            response = self._client.post(f"{self._base_url}{path}", content=body, headers=headers)
            if response.status_code == 429 or response.status_code >= 500:
                raise _RetryableWebhookStatus(response)
            response.raise_for_status()

        def _on_retry(attempt: RetryAttempt) -> None:
            logger.warning(
                "webhook_retry",
                extra={
                    "extra": {
                        "path": path,
                        "attempt": attempt.attempt,
                        "delay_ms": attempt.delay_ms,
                        "error_type": attempt.error_type,
                    }
                },
            )

        retry_with_backoff(
            _send,
            policy=WEBHOOK_BACKOFF,
            jitter_seed=len(body),
            retry_on=(httpx.TransportError, _RetryableWebhookStatus),
            sleep_fn=self._sleep_fn,
            on_retry=_on_retry,
            retry_after_getter=lambda exc: (
                exc.response.headers.get("Retry-After")
                if isinstance(exc, _RetryableWebhookStatus)
                else None
            ),
        )

    def notify_order_cancelled(self, event: OrderCancelledEvent) -> None:
        self._post("/order/cancelled", event.to_payload())

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
