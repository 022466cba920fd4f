from tradeexec.persistence.sqlite.decisions_repo import SqliteDecisionsRepo
from tradeexec.persistence.sqlite.intents_repo import SqliteIntentsRepo
from tradeexec.persistence.sqlite.orders_repo import SqliteOrdersRepo

__all__ = ["SqliteDecisionsRepo", "SqliteIntentsRepo", "SqliteOrdersRepo"]
