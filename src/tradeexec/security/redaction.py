from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from typing import Any

REDACTED = "***REDACTED***"

# Matched against keys with case and separators removed, so "X-Decision-Signature",
# "api_secret" and "apiSecret" all hit.
SENSITIVE_KEYS = (
    "apikey",
    "apisecret",
    "secret",
    "signature",
    "passphrase",
    "password",
    "token",
    "authorization",
)

_HEADER_PATTERN = re.compile(
    r"(?i)\b(authorization|x-mbx-apikey|x-decision-signature|x-webhook-signature"
    r"|decision_shared_secret|notify_webhook_secret)(\s*[:=]\s*)(bearer\s+)?([^\s,;&]+)"
)
_QUERY_PATTERN = re.compile(r"(?i)(^|[?&\s])(api_?key|signature|token|secret)=([^&\s]+)")
_JSON_PATTERN = re.compile(
    r'(?i)("(?:api_?key|api_?secret|secret(?:_?key)?|passphrase|password|token|signature'
    r'|authorization)"\s*:\s*")([^"\\]*)(")'
)


def _compact(key: object) -> str:
    return re.sub(r"[^a-z0-9]", "", str(key).casefold())


def is_sensitive_key(key: object) -> bool:
    compact = _compact(key)
    return any(fragment in compact for fragment in SENSITIVE_KEYS)


def mask(value: str) -> str:
    """Keep a short prefix and suffix so operators can tell keys apart."""
    size = len(value)
    if size == 0:
        return REDACTED
    if size > 8:
        return value[:4] + "*" * (size - 8) + value[-4:]
    if size > 2:
        return "*" * (size - 2) + value[-2:]
    return "*" * size


def sanitize_text(text: str, known_secrets: Iterable[str] = ()) -> str:
    redacted = str(text)
    for secret in known_secrets:
        if secret:
            redacted = redacted.replace(secret, mask(secret))
    redacted = _HEADER_PATTERN.sub(
        lambda m: f"{m.group(1)}{m.group(2)}{m.group(3) or ''}[REDACTED]", redacted
    )
    redacted = _QUERY_PATTERN.sub(
        lambda m: f"{m.group(1)}{m.group(2)}={mask(m.group(3))}", redacted
    )
    return _JSON_PATTERN.sub(lambda m: f"{m.group(1)}{mask(m.group(2))}{m.group(3)}", redacted)


def sanitize_mapping(data: Mapping[Any, Any]) -> dict[str, Any]:
    sanitized: dict[str, Any] = {}
    for key, value in data.items():
        name = str(key)
        if is_sensitive_key(name):
            sanitized[name] = REDACTED if value is None else mask(str(value))
        else:
            sanitized[name] = redact_data(value)
    return sanitized


def redact_data(value: Any) -> Any:
    """Recursively mask secrets in log payloads and operator output."""
    if isinstance(value, Mapping):
        return sanitize_mapping(value)
    if isinstance(value, list):
        return [redact_data(item) for item in value]
    if isinstance(value, tuple):
        return tuple(redact_data(item) for item in value)
    if isinstance(value, str):
        return sanitize_text(value)
    return value
