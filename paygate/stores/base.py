"""
Store interfaces

The gate only talks to these; the in-memory implementations are the
defaults and anything shared (Redis, a database) can be dropped in as long
as each mutating call is atomic on its own.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List, Optional

from paygate.stores.models import (
    Budget,
    EndpointStats,
    IdempotencyRecord,
    MetricsFilter,
    MetricsReport,
    Session,
    UsageMetric,
)


class BudgetStore(ABC):
    """Pre-authorized agent budgets"""

    @abstractmethod
    def create(self, budget: Budget) -> Budget:
        ...

    @abstractmethod
    def get(self, budget_id: str) -> Optional[Budget]:
        ...

    @abstractmethod
    def get_by_agent(self, agent_id: str) -> Optional[Budget]:
        ...

    @abstractmethod
    def list_by_agent(self, agent_id: str) -> List[Budget]:
        ...

    @abstractmethod
    def deduct(self, budget_id: str, amount: int) -> Budget:
        """
        Atomically subtract `amount` from the remaining balance.

        Raises:
            StoreNotFound: unknown budget
            InsufficientBudget: amount exceeds what remains, or the budget expired
        """

    @abstractmethod
    def refund(self, budget_id: str, amount: int) -> Budget:
        """
        Atomically give back `amount` previously deducted.

        Raises:
            StoreNotFound: unknown budget
            InvalidRefund: amount exceeds what has been spent
        """

    @abstractmethod
    def delete(self, budget_id: str) -> Budget:
        ...


class SessionStore(ABC):
    """Pre-paid access sessions"""

    @abstractmethod
    def create(self, session: Session) -> Session:
        ...

    @abstractmethod
    def get(self, session_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    def update(self, session: Session) -> Session:
        ...

    @abstractmethod
    def delete(self, session_id: str) -> bool:
        ...

    @abstractmethod
    def list_by_payer(self, payer_address: str) -> List[Session]:
        ...

    @abstractmethod
    def consume(self, session_id: str, path: str, now: Optional[datetime] = None) -> Session:
        """
        Validate the session for `path` and count one request, as one step.

        Raises:
            StoreNotFound: unknown session
            SessionInvalid: inactive, expired, exhausted or endpoint not allowed
        """

    @abstractmethod
    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        ...


class MeteringStore(ABC):
    """Bounded log of gated requests with aggregate queries"""

    @abstractmethod
    def record(self, metric: UsageMetric) -> None:
        ...

    @abstractmethod
    def query(self, metrics_filter: Optional[MetricsFilter] = None) -> MetricsReport:
        ...

    @abstractmethod
    def endpoint_stats(self) -> List[EndpointStats]:
        ...


class IdempotencyStore(ABC):
    """Completed responses keyed by client idempotency key"""

    @abstractmethod
    def get(self, key: str, now: Optional[datetime] = None) -> Optional[IdempotencyRecord]:
        ...

    @abstractmethod
    def set(self, key: str, record: IdempotencyRecord) -> IdempotencyRecord:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def purge_expired(self, now: Optional[datetime] = None) -> int:
        ...
