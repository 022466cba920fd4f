from __future__ import annotations

import httpx
import pytest

from tradeexec.domain.errors import ExchangeError, OrderNotFoundError
from tradeexec.services.execution_errors import ExecutionErrorCategory, classify_exchange_error


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://venue.test/api/v3/order")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


@pytest.mark.parametrize(
    ("exc", "category"),
    [
        (ExchangeError("slow down", status_code=429), ExecutionErrorCategory.RATE_LIMIT),
        (_status_error(429), ExecutionErrorCategory.RATE_LIMIT),
        (ExchangeError("bad key", status_code=401), ExecutionErrorCategory.AUTH),
        (_status_error(503), ExecutionErrorCategory.TRANSIENT),
        (ExchangeError("filter failure", status_code=400), ExecutionErrorCategory.REJECT),
        (OrderNotFoundError("gone"), ExecutionErrorCategory.NOT_FOUND),
        (ExchangeError('{"code":-2013,"msg":"Order does not exist."}'), ExecutionErrorCategory.NOT_FOUND),
        (httpx.ReadTimeout("read timed out"), ExecutionErrorCategory.UNCERTAIN),
        (httpx.ConnectError("refused"), ExecutionErrorCategory.TRANSIENT),
        (TimeoutError(), ExecutionErrorCategory.UNCERTAIN),
        (RuntimeError("unexpected"), ExecutionErrorCategory.FATAL),
    ],
)
def test_classify_exchange_error(exc: Exception, category: ExecutionErrorCategory) -> None:
    assert classify_exchange_error(exc) is category
