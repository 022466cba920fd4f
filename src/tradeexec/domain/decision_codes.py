from __future__ import annotations

from enum import StrEnum


class AdmissionReason(StrEnum):
    EXECUTION_BLOCKED = "EXECUTION_BLOCKED"
    MISSING_AUTH_FIELDS = "MISSING_AUTH_FIELDS"
    INVALID_TIMESTAMP = "INVALID_TIMESTAMP"
    TIMESTAMP_EXPIRED = "TIMESTAMP_EXPIRED"
    NONCE_REPLAY_DETECTED = "NONCE_REPLAY_DETECTED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    GLOBAL_RATE_LIMIT = "GLOBAL_RATE_LIMIT"
    DECISION_RATE_LIMIT = "DECISION_RATE_LIMIT"
    USER_RATE_LIMIT = "USER_RATE_LIMIT"
    DECISION_NOT_FOUND = "DECISION_NOT_FOUND"
    EXECUTION_FAILED = "EXECUTION_FAILED"


ADMISSION_STATUS_CODES: dict[AdmissionReason, int] = {
    AdmissionReason.EXECUTION_BLOCKED: 403,
    AdmissionReason.MISSING_AUTH_FIELDS: 401,
    AdmissionReason.INVALID_TIMESTAMP: 401,
    AdmissionReason.TIMESTAMP_EXPIRED: 401,
    AdmissionReason.NONCE_REPLAY_DETECTED: 401,
    AdmissionReason.INVALID_SIGNATURE: 401,
    AdmissionReason.GLOBAL_RATE_LIMIT: 429,
    AdmissionReason.DECISION_RATE_LIMIT: 429,
    AdmissionReason.USER_RATE_LIMIT: 429,
    AdmissionReason.DECISION_NOT_FOUND: 404,
    AdmissionReason.EXECUTION_FAILED: 502,
}


class ExecutionStatus(StrEnum):
    SUBMITTED = "SUBMITTED"
    IDEMPOTENT = "IDEMPOTENT"


class IntentStatus(StrEnum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"


class IntentCreateStatus(StrEnum):
    CREATED = "CREATED"
    ALREADY_EXISTS = "ALREADY_EXISTS"
