"""
In-memory budget store
"""

import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

import structlog

from paygate.payments.errors import InsufficientBudget, InvalidRefund, StoreNotFound
from paygate.payments.models import utcnow
from paygate.stores.base import BudgetStore
from paygate.stores.models import Budget

logger = structlog.get_logger()


class InMemoryBudgetStore(BudgetStore):
    """
    Budgets held in a dict behind one lock.

    Callers always receive copies, so a concurrent reader never sees a
    half-applied deduction. Expired budgets are left in place and refused
    lazily on the next deduction.
    """

    def __init__(self, default_ttl: Optional[int] = None):
        self._lock = threading.Lock()
        self._budgets: Dict[str, Budget] = {}
        self._by_agent: Dict[str, str] = {}
        self.default_ttl = default_ttl

    def create(self, budget: Budget) -> Budget:
        budget = budget.model_copy(deep=True)
        if budget.expires_at is None and self.default_ttl:
            budget.expires_at = budget.created_at + timedelta(seconds=self.default_ttl)
        with self._lock:
            if budget.id in self._budgets:
                raise ValueError(f"budget {budget.id} already exists")
            self._budgets[budget.id] = budget
            self._by_agent[budget.agent_id] = budget.id
            snapshot = budget.model_copy(deep=True)
        logger.info("budget_created", budget_id=budget.id, agent_id=budget.agent_id, total=budget.total)
        return snapshot

    def get(self, budget_id: str) -> Optional[Budget]:
        with self._lock:
            budget = self._budgets.get(budget_id)
            return budget.model_copy(deep=True) if budget else None

    def get_by_agent(self, agent_id: str) -> Optional[Budget]:
        """Latest budget created for the agent"""
        with self._lock:
            budget_id = self._by_agent.get(agent_id)
            budget = self._budgets.get(budget_id) if budget_id else None
            return budget.model_copy(deep=True) if budget else None

    def list_by_agent(self, agent_id: str) -> List[Budget]:
        with self._lock:
            return [
                b.model_copy(deep=True)
                for b in self._budgets.values()
                if b.agent_id == agent_id
            ]

    def deduct(self, budget_id: str, amount: int, now: Optional[datetime] = None) -> Budget:
        if amount < 0:
            raise ValueError("deduction must be non-negative")
        with self._lock:
            budget = self._budgets.get(budget_id)
            if budget is None:
                raise StoreNotFound(f"budget {budget_id} not found")
            if budget.is_expired(now or utcnow()):
                raise InsufficientBudget(
                    "budget expired", required=amount, available=0, budget_id=budget_id
                )
            if amount > budget.remaining:
                raise InsufficientBudget(
                    "insufficient budget",
                    required=amount,
                    available=budget.remaining,
                    budget_id=budget_id,
                )
            budget.remaining -= amount
            budget.spent += amount
            budget.request_count += 1
            return budget.model_copy(deep=True)

    def refund(self, budget_id: str, amount: int) -> Budget:
        if amount < 0:
            raise ValueError("refund must be non-negative")
        with self._lock:
            budget = self._budgets.get(budget_id)
            if budget is None:
                raise StoreNotFound(f"budget {budget_id} not found")
            if amount > budget.spent:
                raise InvalidRefund(
                    f"refund of {amount} exceeds spent amount {budget.spent}"
                )
            budget.remaining += amount
            budget.spent -= amount
            return budget.model_copy(deep=True)

    def delete(self, budget_id: str) -> Budget:
        with self._lock:
            budget = self._budgets.pop(budget_id, None)
            if budget is None:
                raise StoreNotFound(f"budget {budget_id} not found")
            if self._by_agent.get(budget.agent_id) == budget_id:
                del self._by_agent[budget.agent_id]
        logger.info("budget_deleted", budget_id=budget_id, refunded=budget.remaining, spent=budget.spent)
        return budget

    def __len__(self) -> int:
        with self._lock:
            return len(self._budgets)
