from __future__ import annotations

import json
import logging
import sqlite3
from datetime import UTC, datetime
from decimal import Decimal

from tradeexec.domain.models import (
    OPEN_ORDER_STATUSES,
    Order,
    OrderRole,
    OrderSide,
    OrderStatus,
    OrderType,
    normalize_venue,
)
from tradeexec.persistence.sqlite.sqlite_connection import (
    ensure_orders_schema,
    from_db_timestamp,
    to_db_timestamp,
)

logger = logging.getLogger(__name__)


def _opt_decimal(value: object) -> Decimal | None:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _opt_text(value: Decimal | None) -> str | None:
    return str(value) if value is not None else None


class SqliteOrdersRepo:
    def __init__(self, conn: sqlite3.Connection, *, read_only: bool = False) -> None:
        self._conn = conn
        self._read_only = read_only
        ensure_orders_schema(conn)

    def _ensure_writable(self) -> None:
        if self._read_only:
            logger.warning("read_only_write_blocked", extra={"extra": {"repo": "orders"}})
            raise PermissionError("UnitOfWork is read-only; orders writes are blocked")

    def _row_to_order(self, row: sqlite3.Row) -> Order:
        order_timestamp = from_db_timestamp(row["order_timestamp"])
        assert order_timestamp is not None
        return Order(
            id=int(row["id"]),
            order_id=str(row["order_id"]),
            exchange=str(row["exchange"]),
            symbol=str(row["symbol"]),
            side=OrderSide(str(row["side"])),
            type=OrderType(str(row["type"])),
            quantity=Decimal(str(row["quantity"])),
            price=_opt_decimal(row["price"]),
            executed_qty=Decimal(str(row["executed_qty"])),
            status=OrderStatus(str(row["status"])),
            client_order_id=(str(row["client_order_id"]) if row["client_order_id"] else None),
            parent_order_id=(str(row["parent_order_id"]) if row["parent_order_id"] else None),
            order_group_id=(str(row["order_group_id"]) if row["order_group_id"] else None),
            order_role=(OrderRole(str(row["order_role"])) if row["order_role"] else None),
            tp_levels=tuple(Decimal(str(level)) for level in json.loads(row["tp_levels_json"])),
            sl_price=_opt_decimal(row["sl_price"]),
            order_timestamp=order_timestamp,
            filled_timestamp=from_db_timestamp(row["filled_timestamp"]),
            user_id=(str(row["user_id"]) if row["user_id"] else None),
            metadata=json.loads(row["metadata_json"] or "{}"),
        )

    def insert(self, order: Order) -> Order:
        """Insert ``order``; an existing (order_id, exchange) row is kept and returned."""
        self._ensure_writable()
        now = to_db_timestamp(datetime.now(UTC))
        exchange = normalize_venue(order.exchange)
        self._conn.execute(
            """
            INSERT INTO orders(
                order_id, exchange, symbol, side, type, quantity, price, executed_qty,
                status, client_order_id, parent_order_id, order_group_id, order_role,
                tp_levels_json, sl_price, order_timestamp, filled_timestamp, user_id,
                metadata_json, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(order_id, exchange) DO NOTHING
            """,
            (
                order.order_id,
                exchange,
                order.symbol,
                order.side.value,
                order.type.value,
                str(order.quantity),
                _opt_text(order.price),
                str(order.executed_qty),
                order.status.value,
                order.client_order_id,
                order.parent_order_id,
                order.order_group_id,
                order.order_role.value if order.order_role is not None else None,
                json.dumps([str(level) for level in order.tp_levels]),
                _opt_text(order.sl_price),
                to_db_timestamp(order.order_timestamp),
                to_db_timestamp(order.filled_timestamp) if order.filled_timestamp else None,
                order.user_id,
                json.dumps(order.metadata, sort_keys=True, default=str),
                now,
                now,
            ),
        )
        stored = self.get(order.order_id, exchange)
        assert stored is not None
        return stored

    def get(self, order_id: str, exchange: str) -> Order | None:
        row = self._conn.execute(
            "SELECT * FROM orders WHERE order_id = ? AND exchange = ?",
            (order_id, normalize_venue(exchange)),
        ).fetchone()
        if row is None:
            return None
        return self._row_to_order(row)

    def list_open_entry_orders(self, since: datetime) -> list[Order]:
        """Open BUY entry orders placed at or after ``since``, oldest first."""
        statuses = sorted(status.value for status in OPEN_ORDER_STATUSES)
        placeholders = ",".join("?" for _ in statuses)
        rows = self._conn.execute(
            f"""
            SELECT * FROM orders
            WHERE order_role = ?
              AND side = ?
              AND status IN ({placeholders})
              AND order_timestamp >= ?
            ORDER BY user_id, exchange, order_timestamp
            """,
            (OrderRole.ENTRY.value, OrderSide.BUY.value, *statuses, to_db_timestamp(since)),
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def list_for_user(self, user_id: str) -> list[Order]:
        rows = self._conn.execute(
            "SELECT * FROM orders WHERE user_id = ? ORDER BY order_timestamp",
            (user_id,),
        ).fetchall()
        return [self._row_to_order(row) for row in rows]

    def update_exchange_state(self, order: Order) -> None:
        self._ensure_writable()
        if order.id is None:
            raise ValueError("order has no primary key; insert it first")
        self._conn.execute(
            """
            UPDATE orders
            SET status = ?, executed_qty = ?, filled_timestamp = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                order.status.value,
                str(order.executed_qty),
                to_db_timestamp(order.filled_timestamp) if order.filled_timestamp else None,
                to_db_timestamp(datetime.now(UTC)),
                order.id,
            ),
        )

    def delete_by_id(self, row_id: int) -> bool:
        self._ensure_writable()
        cursor = self._conn.execute("DELETE FROM orders WHERE id = ?", (row_id,))
        return cursor.rowcount > 0
