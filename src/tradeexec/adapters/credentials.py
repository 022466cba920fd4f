from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path
from typing import Protocol

from tradeexec.domain.models import Credential, normalize_venue

logger = logging.getLogger(__name__)

_REQUIRED_FIELDS = ("user_id", "venue", "api_key", "api_secret")


class CredentialProvider(Protocol):
    def list_credentials(self, user_id: str, venue: str) -> list[Credential]: ...

    def list_all(self, venue: str | None = None) -> list[Credential]: ...


class StaticCredentialProvider:
    """Serves already-decrypted credentials from memory."""

    def __init__(self, credentials: Iterable[Credential] = ()) -> None:
        self._credentials: list[Credential] = list(credentials)

    @classmethod
    def from_json_file(cls, path: str | Path) -> StaticCredentialProvider:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(raw, list):
            raise ValueError("credentials file must contain a JSON list")
        credentials: list[Credential] = []
        for index, item in enumerate(raw):
            if not isinstance(item, dict):
                raise ValueError(f"credentials[{index}] must be an object")
            missing = [name for name in _REQUIRED_FIELDS if not item.get(name)]
            if missing:
                raise ValueError(f"credentials[{index}] missing fields: {missing}")
            credentials.append(
                Credential(
                    user_id=str(item["user_id"]),
                    venue=str(item["venue"]),
                    api_key=str(item["api_key"]),
                    api_secret=str(item["api_secret"]),
                    passphrase=(str(item["passphrase"]) if item.get("passphrase") else None),
                    label=(str(item["label"]) if item.get("label") else None),
                )
            )
        logger.info(
            "credentials_loaded",
            extra={"extra": {"count": len(credentials), "path": str(path)}},
        )
        return cls(credentials)

    def add(self, credential: Credential) -> None:
        self._credentials.append(credential)

    def list_credentials(self, user_id: str, venue: str) -> list[Credential]:
        wanted = normalize_venue(venue)
        return [
            credential
            for credential in self._credentials
            if credential.user_id == user_id and credential.venue == wanted
        ]

    def list_all(self, venue: str | None = None) -> list[Credential]:
        if venue is None:
            return list(self._credentials)
        wanted = normalize_venue(venue)
        return [credential for credential in self._credentials if credential.venue == wanted]
