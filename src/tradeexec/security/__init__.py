from tradeexec.security.redaction import (
    REDACTED,
    SENSITIVE_KEYS,
    is_sensitive_key,
    mask,
    redact_data,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "is_sensitive_key",
    "mask",
    "redact_data",
    "sanitize_mapping",
    "sanitize_text",
]
