from __future__ import annotations

from dataclasses import dataclass

from tradeexec.domain.decision_codes import ADMISSION_STATUS_CODES, AdmissionReason


class ExchangeError(RuntimeError):
    """Typed failure reported by a venue adapter."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | int | None = None,
        venue: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.venue = venue


class OrderNotFoundError(ExchangeError):
    """The venue does not know the order: it was already cancelled, expired or never existed."""


class AdmissionError(Exception):
    def __init__(
        self,
        reason: AdmissionReason,
        message: str,
        *,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(f"{reason.value}: {message}")
        self.reason = reason
        self.message = message
        self.retry_after = retry_after

    @property
    def status_code(self) -> int:
        return ADMISSION_STATUS_CODES[self.reason]

    def as_body(self) -> dict[str, object]:
        body: dict[str, object] = {
            "statusCode": self.status_code,
            "reason": self.reason.value,
            "message": str(self),
        }
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        return body


class NoCredentialsError(ValueError):
    """Raised when an operation is requested with an empty candidate list."""


@dataclass(frozen=True)
class CredentialAttempt:
    user_id: str
    venue: str
    error: str
    skipped: bool = False

    def describe(self) -> str:
        return f"{self.user_id[:8]}@{self.venue}: {self.error}"


class AllCredentialsFailedError(RuntimeError):
    def __init__(self, operation: str, candidate_count: int, attempts: list[CredentialAttempt]):
        summary = "; ".join(attempt.describe() for attempt in attempts)
        super().__init__(
            f"All {candidate_count} credentials failed for {operation}. Errors: {summary}"
        )
        self.operation = operation
        self.candidate_count = candidate_count
        self.attempts = tuple(attempts)


class PlacementFailedError(RuntimeError):
    """Order placement for an intent failed; the intent is marked FAILED and never retried."""

    def __init__(self, intent_id: str, message: str) -> None:
        super().__init__(message)
        self.intent_id = intent_id
