from __future__ import annotations

import logging
import sqlite3
import uuid
from datetime import UTC, datetime

from tradeexec.domain.decision_codes import IntentCreateStatus, IntentStatus
from tradeexec.domain.models import Decision, Intent, normalize_venue
from tradeexec.persistence.sqlite.sqlite_connection import (
    ensure_intents_schema,
    from_db_timestamp,
    to_db_timestamp,
)

logger = logging.getLogger(__name__)


class SqliteIntentsRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_intents_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "intents"}})
            raise PermissionError("UnitOfWork is read-only; intents writes are blocked")

    def _row_to_intent(self, row: sqlite3.Row) -> Intent:
        return Intent(
            intent_id=str(row["intent_id"]),
            decision_id=str(row["decision_id"]),
            user_id=str(row["user_id"]),
            venue=str(row["exchange"]),
            status=IntentStatus(str(row["status"])),
            order_id=(str(row["order_id"]) if row["order_id"] else None),
            last_error=(str(row["last_error"]) if row["last_error"] else None),
            created_at=from_db_timestamp(row["created_at"]),
            updated_at=from_db_timestamp(row["updated_at"]),
        )

    def create_for_decision(self, decision: Decision) -> tuple[Intent, IntentCreateStatus]:
        """Create the intent for ``decision`` unless one already exists.

        Relies on the UNIQUE decision_id constraint, so two concurrent
        callers cannot both get ``CREATED``.
        """
        self._ensure_writable()
        now = to_db_timestamp(datetime.now(UTC))
        cursor = self._conn.execute(
            """
            INSERT INTO intents(
                intent_id, decision_id, user_id, exchange, status, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(decision_id) DO NOTHING
            """,
            (
                uuid.uuid4().hex,
                decision.decision_id,
                decision.user_id,
                normalize_venue(decision.venue),
                IntentStatus.CREATED.value,
                now,
                now,
            ),
        )
        status = IntentCreateStatus.CREATED if cursor.rowcount > 0 else IntentCreateStatus.ALREADY_EXISTS
        intent = self.get_by_decision(decision.decision_id)
        assert intent is not None
        return intent, status

    def get(self, intent_id: str) -> Intent | None:
        row = self._conn.execute(
            "SELECT * FROM intents WHERE intent_id = ?", (intent_id,)
        ).fetchone()
        return self._row_to_intent(row) if row is not None else None

    def get_by_decision(self, decision_id: str) -> Intent | None:
        row = self._conn.execute(
            "SELECT * FROM intents WHERE decision_id = ?", (decision_id,)
        ).fetchone()
        return self._row_to_intent(row) if row is not None else None

    def mark_submitted(self, intent_id: str, order_id: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            """
            UPDATE intents SET status = ?, order_id = ?, last_error = NULL, updated_at = ?
            WHERE intent_id = ?
            """,
            (IntentStatus.SUBMITTED.value, order_id, to_db_timestamp(datetime.now(UTC)), intent_id),
        )

    def mark_failed(self, intent_id: str, error: str) -> None:
        self._ensure_writable()
        self._conn.execute(
            "UPDATE intents SET status = ?, last_error = ?, updated_at = ? WHERE intent_id = ?",
            (IntentStatus.FAILED.value, error[:1000], to_db_timestamp(datetime.now(UTC)), intent_id),
        )
