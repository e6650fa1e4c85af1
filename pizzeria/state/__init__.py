"""State management modules."""

from pizzeria.state.manager import StateManager
from pizzeria.state.store import InMemoryOrderStore, OrderChange, OrderStore, RedisOrderStore
from pizzeria.state.sync import (
    OptimisticOrderView,
    OrderSynchronizer,
    PendingOrderNotifier,
)
from pizzeria.state.workflow import Actor, OrderStateMachine, OrderTransitions

__all__ = [
    "StateManager",
    "OrderStore",
    "InMemoryOrderStore",
    "RedisOrderStore",
    "OrderChange",
    "OrderSynchronizer",
    "OptimisticOrderView",
    "PendingOrderNotifier",
    "Actor",
    "OrderStateMachine",
    "OrderTransitions",
]
