from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

from tradeexec.domain.models import Decision, OrderRole, OrderSide, OrderType, normalize_venue
from tradeexec.persistence.sqlite.sqlite_connection import ensure_decisions_schema, to_db_timestamp

logger = logging.getLogger(__name__)


class SqliteDecisionsRepo:
    """Reads decisions written by the upstream producer.

    ``save`` exists for seeding and tests; the execution path only reads.
    """

    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_decisions_schema(conn)

    def find_by_id(self, decision_id: str) -> Decision | None:
        row = self._conn.execute(
            "SELECT * FROM decisions WHERE decision_id = ?", (decision_id,)
        ).fetchone()
        if row is None:
            return None
        return Decision(
            decision_id=str(row["decision_id"]),
            user_id=str(row["user_id"]),
            venue=str(row["exchange"]),
            symbol=str(row["symbol"]),
            side=OrderSide(str(row["side"]).upper()),
            order_type=OrderType(str(row["order_type"]).upper()),
            quantity=Decimal(str(row["quantity"])),
            price=(Decimal(str(row["price"])) if row["price"] is not None else None),
            order_role=(OrderRole(str(row["order_role"])) if row["order_role"] else OrderRole.ENTRY),
            tp_levels=tuple(Decimal(str(level)) for level in json.loads(row["tp_levels_json"])),
            sl_price=(Decimal(str(row["sl_price"])) if row["sl_price"] is not None else None),
            metadata=json.loads(row["metadata_json"] or "{}"),
        )

    def save(self, decision: Decision) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "decisions"}})
            raise PermissionError("UnitOfWork is read-only; decisions writes are blocked")
        self._conn.execute(
            """
            INSERT OR REPLACE INTO decisions(
                decision_id, user_id, exchange, symbol, side, order_type, quantity, price,
                order_role, tp_levels_json, sl_price, metadata_json, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                decision.decision_id,
                decision.user_id,
                normalize_venue(decision.venue),
                decision.symbol,
                decision.side.value,
                decision.order_type.value,
                str(decision.quantity),
                str(decision.price) if decision.price is not None else None,
                decision.order_role.value,
                json.dumps([str(level) for level in decision.tp_levels]),
                str(decision.sl_price) if decision.sl_price is not None else None,
                json.dumps(decision.metadata, sort_keys=True, default=str),
                to_db_timestamp(datetime.now(UTC)),
            ),
        )
