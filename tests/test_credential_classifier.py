from __future__ import annotations

import pytest

from tradeexec.services.credential_classifier import InvalidCredentialClassifier


@pytest.mark.parametrize(
    ("venue", "text"),
    [
        ("binance", '{"code":-2015,"msg":"Invalid API-key, IP, or permissions for action."}'),
        ("Binance", "API-key format invalid."),
        ("bitget", '{"code":"40006","msg":"Invalid ACCESS_KEY"}'),
        ("gateio", "INVALID_SIGNATURE: Signature mismatch"),
        ("mexc", "Api key info invalid"),
        ("kraken", "apikey_invalid"),
        ("okx", "IP not whitelisted for this key"),
    ],
)
def test_known_signatures_are_invalid_credentials(venue: str, text: str) -> None:
    assert InvalidCredentialClassifier().is_invalid_credential(venue, text) is True


@pytest.mark.parametrize(
    ("venue", "text"),
    [
        ("binance", "401 Unauthorized"),
        ("binance", "Timestamp for this request is outside of the recvWindow."),
        ("gateio", '{"code":-2015}'),
        ("mexc", ""),
        ("mexc", None),
    ],
)
def test_other_errors_are_not_invalid_credentials(venue: str, text: str | None) -> None:
    assert InvalidCredentialClassifier().is_invalid_credential(venue, text) is False


def test_tables_are_replaceable_and_extendable() -> None:
    classifier = InvalidCredentialClassifier({"acme": ["KEY_REVOKED"]}, generic_signatures=())
    assert classifier("acme", "error: key_revoked") is True
    assert classifier("binance", "Invalid API-key") is False

    classifier.register("binance", ["-2015"])
    assert classifier("binance", "code -2015") is True
    assert classifier.signatures_for("BINANCE") == ("-2015",)
