from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from threading import Lock
from typing import Generic, Protocol, TypeVar

from tradeexec.domain.errors import (
    AllCredentialsFailedError,
    CredentialAttempt,
    NoCredentialsError,
)
from tradeexec.domain.health import (
    PRIORITY_PROBATION,
    PRIORITY_PROVEN,
    PRIORITY_QUARANTINED,
    PRIORITY_UNUSED,
    CredentialHealthRecord,
    CredentialKey,
    HealthState,
    HealthSummary,
    RankedCredential,
)
from tradeexec.logging_context import short_id
from tradeexec.obs.metrics import inc_counter
from tradeexec.services.credential_classifier import InvalidCredentialClassifier

logger = logging.getLogger(__name__)

_ERROR_SNIPPET_LIMIT = 100


class CredentialLike(Protocol):
    @property
    def user_id(self) -> str: ...

    @property
    def venue(self) -> str: ...


C = TypeVar("C", bound=CredentialLike)
R = TypeVar("R")


@dataclass(frozen=True)
class FallbackResult(Generic[C, R]):
    result: R
    credential: C
    failed_attempts: tuple[CredentialAttempt, ...] = ()


def error_text(exc: BaseException) -> str:
    text = str(exc).strip()
    return text or type(exc).__name__


class CredentialHealthManager:
    """Tracks per-(user, venue) credential reliability and picks credentials by health.

    Records are created on the first reported outcome and kept in process
    memory only. Unknown credentials are treated as healthy. A quarantined
    credential moves to probation once the quarantine duration has elapsed;
    only ``record_success`` clears a quarantine.

    Priorities used for ranking (lower is better):

    * 0: proven healthy (has succeeded, no failures since)
    * 1: never used
    * 1..99: failing but below the quarantine threshold (the failure count)
    * 100 + failures: quarantine expired, on probation
    * 1000 + failures: actively quarantined, last resort
    """

    def __init__(
        self,
        *,
        quarantine_threshold: int = 3,
        quarantine_duration_seconds: float = 300.0,
        classifier: InvalidCredentialClassifier | None = None,
        now_fn: Callable[[], datetime] | None = None,
    ) -> None:
        if quarantine_threshold < 1:
            raise ValueError("quarantine_threshold must be >= 1")
        if quarantine_duration_seconds <= 0:
            raise ValueError("quarantine_duration_seconds must be > 0")
        self.quarantine_threshold = quarantine_threshold
        self.quarantine_duration_seconds = float(quarantine_duration_seconds)
        self._classifier = classifier or InvalidCredentialClassifier()
        self._now = now_fn or (lambda: datetime.now(UTC))
        self._lock = Lock()
        self._records: dict[CredentialKey, CredentialHealthRecord] = {}

    def _record_locked(self, key: CredentialKey) -> CredentialHealthRecord:
        record = self._records.get(key)
        if record is None:
            record = CredentialHealthRecord(user_id=key.user_id, venue=key.venue)
            self._records[key] = record
        return record

    def record_success(self, user_id: str, venue: str) -> None:
        key = CredentialKey.of(user_id, venue)
        with self._lock:
            record = self._record_locked(key)
            was_quarantined = record.quarantined
            record.consecutive_failures = 0
            record.total_successes += 1
            record.last_success_at = self._now()
            record.last_error = None
            record.quarantined = False
            record.quarantined_at = None
            record.quarantine_reason = None

        if was_quarantined:
            logger.info(
                "credential_healed",
                extra={"extra": {"user_id": short_id(user_id), "venue": key.venue}},
            )

    def record_failure(self, user_id: str, venue: str, error_message: str) -> None:
        key = CredentialKey.of(user_id, venue)
        invalid_credential = self._classifier.is_invalid_credential(key.venue, error_message)
        newly_quarantined = False
        with self._lock:
            record = self._record_locked(key)
            record.consecutive_failures += 1
            record.total_failures += 1
            record.last_failure_at = self._now()
            record.last_error = error_message
            should_quarantine = (
                invalid_credential or record.consecutive_failures >= self.quarantine_threshold
            )
            if should_quarantine and not record.quarantined:
                record.quarantined = True
                record.quarantined_at = self._now()
                record.quarantine_reason = (
                    f"authentication error: {error_message[:_ERROR_SNIPPET_LIMIT]}"
                    if invalid_credential
                    else f"{record.consecutive_failures} consecutive failures"
                )
                newly_quarantined = True
            consecutive = record.consecutive_failures
            reason = record.quarantine_reason

        if newly_quarantined:
            logger.warning(
                "credential_quarantined",
                extra={
                    "extra": {
                        "user_id": short_id(user_id),
                        "venue": key.venue,
                        "reason": reason,
                    }
                },
            )
            inc_counter(
                "credential_quarantined_total",
                {"venue": key.venue, "cause": "auth" if invalid_credential else "threshold"},
            )
        elif not should_quarantine:
            logger.warning(
                "credential_failure",
                extra={
                    "extra": {
                        "user_id": short_id(user_id),
                        "venue": key.venue,
                        "consecutive_failures": consecutive,
                        "threshold": self.quarantine_threshold,
                        "error": error_message[:_ERROR_SNIPPET_LIMIT],
                    }
                },
            )

    def _state_of(self, record: CredentialHealthRecord | None, now: datetime) -> HealthState:
        if record is None or not record.quarantined:
            return HealthState.HEALTHY
        if record.quarantine_age_seconds(now) >= self.quarantine_duration_seconds:
            return HealthState.PROBATION
        return HealthState.QUARANTINED

    def health_state(self, user_id: str, venue: str) -> HealthState:
        key = CredentialKey.of(user_id, venue)
        with self._lock:
            return self._state_of(self._records.get(key), self._now())

    def is_healthy(self, user_id: str, venue: str) -> bool:
        """True unless actively quarantined; probation counts as healthy."""
        return self.health_state(user_id, venue) is not HealthState.QUARANTINED

    def get_health(self, user_id: str, venue: str) -> CredentialHealthRecord | None:
        key = CredentialKey.of(user_id, venue)
        with self._lock:
            record = self._records.get(key)
            return record.snapshot() if record is not None else None

    def quarantined_records(self) -> list[CredentialHealthRecord]:
        with self._lock:
            return [record.snapshot() for record in self._records.values() if record.quarantined]

    def health_summary(self) -> HealthSummary:
        with self._lock:
            records = tuple(record.snapshot() for record in self._records.values())
        quarantined = sum(1 for record in records if record.quarantined)
        return HealthSummary(
            total=len(records),
            healthy=len(records) - quarantined,
            quarantined=quarantined,
            records=records,
        )

    def reset_health(self, user_id: str, venue: str) -> bool:
        key = CredentialKey.of(user_id, venue)
        with self._lock:
            removed = self._records.pop(key, None) is not None
        logger.info(
            "credential_health_reset",
            extra={"extra": {"user_id": short_id(user_id), "venue": key.venue, "removed": removed}},
        )
        return removed

    def reset_by_user_prefix(self, user_prefix: str, venue: str) -> int:
        """Forget every record on ``venue`` whose user id starts with ``user_prefix``.

        Operators usually only see the shortened ids from the logs.
        """
        if not user_prefix:
            raise ValueError("user_prefix must not be empty")
        wanted = CredentialKey.of(user_prefix, venue).venue
        with self._lock:
            keys = [
                key
                for key in self._records
                if key.venue == wanted and key.user_id.startswith(user_prefix)
            ]
            for key in keys:
                del self._records[key]
        logger.info(
            "credential_health_reset",
            extra={"extra": {"user_id": short_id(user_prefix), "venue": wanted, "removed": len(keys)}},
        )
        return len(keys)

    def reset_all(self) -> None:
        with self._lock:
            self._records.clear()
        logger.info("credential_health_reset_all")

    def _priority(self, record: CredentialHealthRecord | None, now: datetime) -> int:
        if record is None or record.never_used:
            return PRIORITY_UNUSED
        state = self._state_of(record, now)
        if state is HealthState.QUARANTINED:
            return PRIORITY_QUARANTINED + record.consecutive_failures
        if state is HealthState.PROBATION:
            return min(PRIORITY_PROBATION + record.consecutive_failures, PRIORITY_QUARANTINED - 1)
        if record.consecutive_failures == 0:
            return PRIORITY_PROVEN
        return min(record.consecutive_failures, PRIORITY_PROBATION - 1)

    def sort_by_health(self, candidates: Sequence[C]) -> list[RankedCredential[C]]:
        now = self._now()
        ranked: list[RankedCredential[C]] = []
        with self._lock:
            for candidate in candidates:
                key = CredentialKey.of(candidate.user_id, candidate.venue)
                record = self._records.get(key)
                priority = self._priority(record, now)
                snapshot = (
                    record.snapshot()
                    if record is not None
                    else CredentialHealthRecord(user_id=key.user_id, venue=key.venue)
                )
                ranked.append(
                    RankedCredential(credential=candidate, record=snapshot, priority=priority)
                )
        return sorted(ranked, key=lambda entry: entry.priority)

    def select_healthy_credential(
        self,
        candidates: Sequence[C],
        preferred_user: str | None = None,
    ) -> C | None:
        if not candidates:
            return None
        ranked = self.sort_by_health(candidates)

        if preferred_user is not None:
            for entry in ranked:
                if entry.credential.user_id == preferred_user and not entry.actively_quarantined:
                    return entry.credential

        for entry in ranked:
            if not entry.actively_quarantined:
                return entry.credential

        # Everything is quarantined. Hand back the credential quarantined the
        # longest so a false-positive quarantine cannot blackhole the only route.
        oldest = min(
            ranked,
            key=lambda entry: entry.record.quarantined_at or datetime.min.replace(tzinfo=UTC),
        )
        logger.warning(
            "all_credentials_quarantined",
            extra={
                "extra": {
                    "candidates": len(candidates),
                    "selected_user_id": short_id(oldest.credential.user_id),
                    "venue": oldest.record.venue,
                }
            },
        )
        return oldest.credential

    def execute_with_fallback(
        self,
        candidates: Sequence[C],
        operation: Callable[[C], R],
        *,
        operation_name: str = "operation",
    ) -> FallbackResult[C, R]:
        """Run ``operation`` with each candidate in health order until one succeeds.

        Actively quarantined candidates are skipped while any other option
        exists. Every outcome is fed back through ``record_success`` /
        ``record_failure``. Raises ``AllCredentialsFailedError`` naming every
        candidate and its last error once no attempt succeeded.
        """
        if not candidates:
            raise NoCredentialsError(f"no credentials supplied for {operation_name}")

        ranked = self.sort_by_health(candidates)
        has_unquarantined = any(not entry.actively_quarantined for entry in ranked)
        attempts: list[CredentialAttempt] = []

        for entry in ranked:
            credential = entry.credential
            if entry.actively_quarantined and has_unquarantined:
                logger.debug(
                    "credential_skipped_quarantined",
                    extra={
                        "extra": {
                            "user_id": short_id(credential.user_id),
                            "operation": operation_name,
                        }
                    },
                )
                attempts.append(
                    CredentialAttempt(
                        user_id=credential.user_id,
                        venue=entry.record.venue,
                        error=f"skipped while quarantined (last error: {entry.record.last_error})",
                        skipped=True,
                    )
                )
                continue

            try:
                result = operation(credential)
            except Exception as exc:  # noqa: BLE001
                message = error_text(exc)
                self.record_failure(credential.user_id, credential.venue, message)
                attempts.append(
                    CredentialAttempt(
                        user_id=credential.user_id,
                        venue=entry.record.venue,
                        error=message[:_ERROR_SNIPPET_LIMIT],
                    )
                )
                continue

            self.record_success(credential.user_id, credential.venue)
            failed = tuple(attempt for attempt in attempts if not attempt.skipped)
            if failed:
                logger.info(
                    "credential_fallback_succeeded",
                    extra={
                        "extra": {
                            "operation": operation_name,
                            "user_id": short_id(credential.user_id),
                            "failed_attempts": len(failed),
                        }
                    },
                )
            return FallbackResult(result=result, credential=credential, failed_attempts=failed)

        inc_counter("credential_fallback_exhausted_total", {"operation": operation_name})
        error = AllCredentialsFailedError(operation_name, len(candidates), attempts)
        logger.error(
            "credential_fallback_exhausted",
            extra={"extra": {"operation": operation_name, "summary": str(error)}},
        )
        raise error
