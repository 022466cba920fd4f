from tradeexec.persistence.interfaces.repos import (
    DecisionSource,
    IntentsRepoProtocol,
    OrdersRepoProtocol,
)

__all__ = ["DecisionSource", "IntentsRepoProtocol", "OrdersRepoProtocol"]
