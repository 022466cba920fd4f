from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from threading import Lock
from time import monotonic
from typing import Protocol


class TtlStore(Protocol):
    """Shared key/value store with per-key expiry (Redis command subset)."""

    def exists(self, key: str) -> bool: ...

    def setex(self, key: str, seconds: int, value: str) -> None: ...

    def set_if_absent(self, key: str, seconds: int, value: str) -> bool: ...

    def incr(self, key: str) -> int: ...

    def expire(self, key: str, seconds: int) -> bool: ...

    def get(self, key: str) -> str | None: ...

    def ttl(self, key: str) -> int: ...


@dataclass
class _Entry:
    value: str
    expires_at: float | None


class InMemoryTtlStore:
    """Process-local ``TtlStore``; every operation is atomic under one lock.

    ``ttl`` follows Redis conventions: -2 for a missing key, -1 for a key
    without expiry, otherwise whole seconds remaining (rounded up).

    Writes purge expired keys at most once per ``sweep_interval_seconds``;
    nonce and rate-window keys are never read back after they lapse.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = monotonic,
        sweep_interval_seconds: float = 1.0,
    ) -> None:
        self._clock = clock
        self._lock = Lock()
        self._entries: dict[str, _Entry] = {}
        self._sweep_interval = sweep_interval_seconds
        self._next_sweep = clock() + sweep_interval_seconds

    def _purge_locked(self, now: float) -> int:
        expired = [
            key
            for key, entry in self._entries.items()
            if entry.expires_at is not None and entry.expires_at <= now
        ]
        for key in expired:
            del self._entries[key]
        self._next_sweep = now + self._sweep_interval
        return len(expired)

    def _maybe_sweep_locked(self) -> None:
        now = self._clock()
        if now >= self._next_sweep:
            self._purge_locked(now)

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _live_entry_locked(self, key: str) -> _Entry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def exists(self, key: str) -> bool:
        with self._lock:
            return self._live_entry_locked(key) is not None

    def setex(self, key: str, seconds: int, value: str) -> None:
        if seconds <= 0:
            raise ValueError("setex seconds must be > 0")
        with self._lock:
            self._maybe_sweep_locked()
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + seconds)

    def set_if_absent(self, key: str, seconds: int, value: str) -> bool:
        if seconds <= 0:
            raise ValueError("set_if_absent seconds must be > 0")
        with self._lock:
            self._maybe_sweep_locked()
            if self._live_entry_locked(key) is not None:
                return False
            self._entries[key] = _Entry(value=value, expires_at=self._clock() + seconds)
            return True

    def incr(self, key: str) -> int:
        with self._lock:
            self._maybe_sweep_locked()
            entry = self._live_entry_locked(key)
            if entry is None:
                self._entries[key] = _Entry(value="1", expires_at=None)
                return 1
            try:
                current = int(entry.value)
            except ValueError as exc:
                raise ValueError(f"value at {key!r} is not an integer") from exc
            entry.value = str(current + 1)
            return current + 1

    def expire(self, key: str, seconds: int) -> bool:
        with self._lock:
            entry = self._live_entry_locked(key)
            if entry is None:
                return False
            if seconds <= 0:
                del self._entries[key]
                return True
            entry.expires_at = self._clock() + seconds
            return True

    def get(self, key: str) -> str | None:
        with self._lock:
            entry = self._live_entry_locked(key)
            return entry.value if entry is not None else None

    def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry_locked(key)
            if entry is None:
                return -2
            if entry.expires_at is None:
                return -1
            remaining = entry.expires_at - self._clock()
            whole = int(remaining)
            return whole if whole == remaining else whole + 1

    def __len__(self) -> int:
        with self._lock:
            now = self._clock()
            return sum(
                1
                for entry in self._entries.values()
                if entry.expires_at is None or entry.expires_at > now
            )
