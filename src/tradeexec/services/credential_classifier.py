from __future__ import annotations

from collections.abc import Iterable, Mapping

from tradeexec.domain.models import normalize_venue

# Signatures that unambiguously mean the key itself is unusable. Generic
# 401/"Unauthorized" responses are not listed: a venue returns those for a
# missing per-endpoint permission while the key stays valid elsewhere.
GENERIC_SIGNATURES: tuple[str, ...] = (
    "APIKEY_INVALID",
    "Apikey does not exist",
    "IP not whitelisted",
)

VENUE_SIGNATURES: dict[str, tuple[str, ...]] = {
    "binance": (
        "Invalid API-key",
        "API-key format invalid",
        "-2015",
        "-2014",
    ),
    "bitget": (
        "Invalid ACCESS_KEY",
        "30011",
        "30012",
        "30013",
        "40006",
    ),
    "gateio": (
        "INVALID_KEY",
        "INVALID_SIGNATURE",
    ),
    "mexc": (
        "10072",
        "Api key info invalid",
    ),
}


class InvalidCredentialClassifier:
    """Decides whether a venue error text means "this credential is invalid".

    One matcher table per venue, plus a generic table applied to every
    venue. Matching is a case-insensitive substring test.
    """

    def __init__(
        self,
        venue_signatures: Mapping[str, Iterable[str]] | None = None,
        *,
        generic_signatures: Iterable[str] = GENERIC_SIGNATURES,
    ) -> None:
        source = VENUE_SIGNATURES if venue_signatures is None else venue_signatures
        self._tables: dict[str, tuple[str, ...]] = {
            normalize_venue(venue): _fold(patterns) for venue, patterns in source.items()
        }
        self._generic = _fold(generic_signatures)

    def register(self, venue: str, patterns: Iterable[str]) -> None:
        key = normalize_venue(venue)
        self._tables[key] = self._tables.get(key, ()) + _fold(patterns)

    def signatures_for(self, venue: str) -> tuple[str, ...]:
        return self._tables.get(normalize_venue(venue), ()) + self._generic

    def is_invalid_credential(self, venue: str, error_text: str | None) -> bool:
        if not error_text:
            return False
        lowered = error_text.casefold()
        return any(pattern in lowered for pattern in self.signatures_for(venue))

    __call__ = is_invalid_credential


def _fold(patterns: Iterable[str]) -> tuple[str, ...]:
    return tuple(pattern.casefold() for pattern in patterns if pattern)
