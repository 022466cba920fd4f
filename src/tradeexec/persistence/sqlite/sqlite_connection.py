from __future__ import annotations

import sqlite3
from datetime import UTC, datetime


def create_sqlite_connection(db_path: str) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


def to_db_timestamp(value: datetime) -> str:
    """UTC ISO-8601 with fixed microsecond precision so text ordering matches time ordering."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def from_db_timestamp(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def ensure_orders_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL,
            exchange TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            type TEXT NOT NULL,
            quantity TEXT NOT NULL,
            price TEXT,
            executed_qty TEXT NOT NULL DEFAULT '0',
            status TEXT NOT NULL,
            client_order_id TEXT,
            parent_order_id TEXT,
            order_group_id TEXT,
            order_role TEXT,
            tp_levels_json TEXT NOT NULL DEFAULT '[]',
            sl_price TEXT,
            order_timestamp TEXT NOT NULL,
            filled_timestamp TEXT,
            user_id TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(order_id, exchange)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_orders_reconcile
        ON orders(order_role, side, status, order_timestamp)
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id)")


def ensure_intents_schema(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS intents (
            intent_id TEXT PRIMARY KEY,
            decision_id TEXT NOT NULL UNIQUE,
            user_id TEXT NOT NULL,
            exchange TEXT NOT NULL,
            status TEXT NOT NULL,
            order_id TEXT,
            last_error TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def ensure_decisions_schema(conn: sqlite3.Connection) -> None:
    # Owned by the upstream decision producer; created here only so a fresh
    # database is queryable.
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS decisions (
            decision_id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            exchange TEXT NOT NULL,
            symbol TEXT NOT NULL,
            side TEXT NOT NULL,
            order_type TEXT NOT NULL,
            quantity TEXT NOT NULL,
            price TEXT,
            order_role TEXT,
            tp_levels_json TEXT NOT NULL DEFAULT '[]',
            sl_price TEXT,
            metadata_json TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL
        )
        """
    )


def ensure_min_schema(conn: sqlite3.Connection) -> None:
    ensure_orders_schema(conn)
    ensure_intents_schema(conn)
    ensure_decisions_schema(conn)
