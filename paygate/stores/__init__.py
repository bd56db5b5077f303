"""
Storage layer for sessions, budgets, metering and idempotent replay
"""

from paygate.stores.base import BudgetStore, SessionStore, MeteringStore, IdempotencyStore
from paygate.stores.budgets import InMemoryBudgetStore
from paygate.stores.sessions import InMemorySessionStore
from paygate.stores.metering import InMemoryMeteringStore
from paygate.stores.idempotency import InMemoryIdempotencyStore

__all__ = [
    "BudgetStore",
    "SessionStore",
    "MeteringStore",
    "IdempotencyStore",
    "InMemoryBudgetStore",
    "InMemorySessionStore",
    "InMemoryMeteringStore",
    "InMemoryIdempotencyStore",
]
