from __future__ import annotations

import hashlib
import hmac
import logging
import re
from collections.abc import Callable
from time import time

from tradeexec.adapters.ttl_store import TtlStore
from tradeexec.domain.decision_codes import AdmissionReason
from tradeexec.domain.errors import AdmissionError

logger = logging.getLogger(__name__)

NONCE_KEY_PREFIX = "decision_nonce"

_UNIX_SECONDS = re.compile(r"^(\d+)(?:\.\d*)?$")


def compute_decision_signature(secret: str, decision_id: str, timestamp: str, nonce: str) -> str:
    message = f"{decision_id}|{timestamp}|{nonce}"
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


class DecisionAuthGuard:
    """Authenticates execute-decision calls: presence, freshness, replay, signature.

    The nonce is reserved before the signature is compared, so a request
    with a bad signature still burns its nonce. Replays are rejected with an
    atomic ``set_if_absent``; two concurrent requests sharing a nonce cannot
    both pass.
    """

    def __init__(
        self,
        secret: str,
        store: TtlStore,
        *,
        timestamp_tolerance_seconds: int = 60,
        nonce_ttl_seconds: int = 300,
        clock: Callable[[], float] = time,
    ) -> None:
        if not secret:
            raise ValueError("decision auth secret must not be empty")
        if nonce_ttl_seconds <= 0:
            raise ValueError("nonce_ttl_seconds must be > 0")
        self._secret = secret
        self._store = store
        self.timestamp_tolerance_seconds = timestamp_tolerance_seconds
        self.nonce_ttl_seconds = nonce_ttl_seconds
        self._clock = clock

    def verify(
        self,
        decision_id: str,
        signature: str | None,
        timestamp: str | None,
        nonce: str | None,
    ) -> None:
        if not signature or not timestamp or not nonce:
            missing = [
                name
                for name, value in (
                    ("signature", signature),
                    ("timestamp", timestamp),
                    ("nonce", nonce),
                )
                if not value
            ]
            raise AdmissionError(
                AdmissionReason.MISSING_AUTH_FIELDS,
                f"missing authentication fields: {', '.join(missing)}",
            )

        self._check_freshness(timestamp)
        self._reserve_nonce(nonce)

        expected = bytes.fromhex(
            compute_decision_signature(self._secret, decision_id, timestamp, nonce)
        )
        try:
            provided = bytes.fromhex(signature.strip())
        except ValueError:
            provided = b""
        if len(provided) != len(expected) or not hmac.compare_digest(provided, expected):
            logger.warning("decision_signature_rejected")
            raise AdmissionError(AdmissionReason.INVALID_SIGNATURE, "signature mismatch")

    def _check_freshness(self, timestamp: str) -> None:
        """Fractional seconds are truncated; the signature still covers the raw header."""
        matched = _UNIX_SECONDS.match(timestamp)
        if matched is None:
            raise AdmissionError(
                AdmissionReason.INVALID_TIMESTAMP,
                "timestamp must be numeric unix seconds",
            )
        skew = abs(int(self._clock()) - int(matched.group(1)))
        if skew > self.timestamp_tolerance_seconds:
            logger.warning(
                "decision_timestamp_expired",
                extra={
                    "extra": {"skew_seconds": skew, "tolerance": self.timestamp_tolerance_seconds}
                },
            )
            raise AdmissionError(
                AdmissionReason.TIMESTAMP_EXPIRED,
                f"timestamp outside the {self.timestamp_tolerance_seconds}s tolerance",
            )

    def _reserve_nonce(self, nonce: str) -> None:
        key = f"{NONCE_KEY_PREFIX}:{nonce}"
        if not self._store.set_if_absent(key, self.nonce_ttl_seconds, "1"):
            logger.warning("decision_nonce_replay")
            raise AdmissionError(
                AdmissionReason.NONCE_REPLAY_DETECTED,
                "nonce has already been used",
            )
