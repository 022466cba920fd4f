from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from types import MappingProxyType

CONTEXT_FIELDS = frozenset({"run_id", "decision_id", "user_id", "order_id", "symbol"})

_context: ContextVar[Mapping[str, str]] = ContextVar(
    "tradeexec_logging_context", default=MappingProxyType({})
)


def get_logging_context() -> dict[str, str]:
    return dict(_context.get())


@contextmanager
def with_logging_context(**fields: str | None) -> Iterator[None]:
    """Layer fields onto every log line emitted inside the block.

    ``None`` values and names outside ``CONTEXT_FIELDS`` are ignored; the
    previous context is restored on exit.
    """
    merged = dict(_context.get())
    for name, value in fields.items():
        if value is not None and name in CONTEXT_FIELDS:
            merged[name] = value
    token = _context.set(MappingProxyType(merged))
    try:
        yield
    finally:
        _context.reset(token)


@contextmanager
def with_run_context(run_id: str) -> Iterator[None]:
    with with_logging_context(run_id=run_id):
        yield


def short_id(value: str | None, length: int = 8) -> str:
    """Shorten user ids for log lines; full ids stay out of the log stream."""
    if not value:
        return "-"
    if len(value) <= length:
        return value
    return f"{value[:length]}..."
