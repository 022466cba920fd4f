from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Any

from tradeexec.logging_context import get_logging_context
from tradeexec.security.redaction import redact_data

# logger name -> (override env var, level used unless the root logs at DEBUG)
_THIRD_PARTY_LOGGERS: dict[str, tuple[str, int]] = {
    "httpx": ("HTTPX_LOG_LEVEL", logging.WARNING),
    "httpcore": ("HTTPCORE_LOG_LEVEL", logging.WARNING),
    "uvicorn.access": ("UVICORN_ACCESS_LOG_LEVEL", logging.WARNING),
}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; structured fields come from ``extra={"extra": {...}}``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        extras = getattr(record, "extra", None)
        if isinstance(extras, Mapping):
            payload.update(extras)
        payload.update(get_logging_context())

        if record.exc_info:
            exc_type, exc_value, _ = record.exc_info
            payload["error_type"] = exc_type.__name__ if exc_type else "Exception"
            payload["error_message"] = "" if exc_value is None else str(exc_value)
            payload["traceback"] = self.formatException(record.exc_info)

        return json.dumps(redact_data(payload), default=str)


def _level(value: str | int | None, default: int) -> int:
    if isinstance(value, int):
        return value
    if value is None or not value.strip():
        return default
    resolved = logging.getLevelName(value.strip().upper())
    return resolved if isinstance(resolved, int) else default


def setup_logging(level: str | int | None = None) -> None:
    root_level = _level(level if level is not None else os.getenv("LOG_LEVEL"), logging.INFO)

    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(root_level)

    for name, (env_name, quiet_level) in _THIRD_PARTY_LOGGERS.items():
        default = quiet_level
        if root_level <= logging.DEBUG and name.startswith("http"):
            default = logging.DEBUG
        logging.getLogger(name).setLevel(_level(os.getenv(env_name), default))
