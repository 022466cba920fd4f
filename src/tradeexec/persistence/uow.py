from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from tradeexec.persistence.interfaces import IntentsRepoProtocol, OrdersRepoProtocol
from tradeexec.persistence.sqlite.decisions_repo import SqliteDecisionsRepo
from tradeexec.persistence.sqlite.intents_repo import SqliteIntentsRepo
from tradeexec.persistence.sqlite.orders_repo import SqliteOrdersRepo
from tradeexec.persistence.sqlite.sqlite_connection import create_sqlite_connection, ensure_min_schema

logger = logging.getLogger(__name__)


class UnitOfWork:
    def __init__(self, db_path: str, *, read_only: bool = False) -> None:
        self._db_path = db_path
        self.read_only = read_only
        self._conn: sqlite3.Connection | None = None
        self.orders: OrdersRepoProtocol
        self.intents: IntentsRepoProtocol
        self.decisions: SqliteDecisionsRepo

    def __enter__(self) -> UnitOfWork:
        conn = create_sqlite_connection(self._db_path)
        ensure_min_schema(conn)
        if self.read_only:
            conn.execute("BEGIN")
        else:
            conn.execute("BEGIN IMMEDIATE")
        self._conn = conn
        self.orders = SqliteOrdersRepo(conn, read_only=self.read_only)
        self.intents = SqliteIntentsRepo(conn, read_only=self.read_only)
        self.decisions = SqliteDecisionsRepo(conn, read_only=self.read_only)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._conn is None:
            return
        try:
            if exc_type is None:
                self._conn.commit()
            else:
                logger.debug(
                    "uow_rollback",
                    extra={"extra": {"db_path": self._db_path, "error_type": exc_type.__name__}},
                )
                self._conn.rollback()
        finally:
            self._conn.close()
            self._conn = None


@dataclass(frozen=True)
class UnitOfWorkFactory:
    db_path: str
    read_only: bool = False

    def __call__(self) -> UnitOfWork:
        return UnitOfWork(self.db_path, read_only=self.read_only)
