from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Generic, TypeVar

from tradeexec.domain.models import normalize_venue

C = TypeVar("C")

PRIORITY_PROVEN = 0
PRIORITY_UNUSED = 1
PRIORITY_PROBATION = 100
PRIORITY_QUARANTINED = 1000


class HealthState(StrEnum):
    HEALTHY = "healthy"
    PROBATION = "probation"
    QUARANTINED = "quarantined"


@dataclass(frozen=True)
class CredentialKey:
    user_id: str
    venue: str

    @classmethod
    def of(cls, user_id: str, venue: str) -> CredentialKey:
        return cls(user_id=user_id, venue=normalize_venue(venue))


@dataclass
class CredentialHealthRecord:
    """Derived reliability of one (user, venue) credential.

    Lives in process memory only; a restart forgets every record and all
    credentials start out healthy again.
    """

    user_id: str
    venue: str
    consecutive_failures: int = 0
    total_failures: int = 0
    total_successes: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error: str | None = None
    quarantined: bool = False
    quarantined_at: datetime | None = None
    quarantine_reason: str | None = None

    @property
    def never_used(self) -> bool:
        return self.total_successes == 0 and self.total_failures == 0

    def quarantine_age_seconds(self, now: datetime) -> float:
        if self.quarantined_at is None:
            return 0.0
        return max(0.0, (now - self.quarantined_at).total_seconds())

    def snapshot(self) -> CredentialHealthRecord:
        return CredentialHealthRecord(**self.__dict__)

    def as_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "venue": self.venue,
            "consecutive_failures": self.consecutive_failures,
            "total_failures": self.total_failures,
            "total_successes": self.total_successes,
            "last_failure_at": _iso(self.last_failure_at),
            "last_success_at": _iso(self.last_success_at),
            "last_error": self.last_error,
            "quarantined": self.quarantined,
            "quarantined_at": _iso(self.quarantined_at),
            "quarantine_reason": self.quarantine_reason,
        }


@dataclass(frozen=True)
class RankedCredential(Generic[C]):
    credential: C
    record: CredentialHealthRecord
    priority: int

    @property
    def actively_quarantined(self) -> bool:
        return self.priority >= PRIORITY_QUARANTINED


@dataclass(frozen=True)
class HealthSummary:
    total: int
    healthy: int
    quarantined: int
    records: tuple[CredentialHealthRecord, ...]


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
