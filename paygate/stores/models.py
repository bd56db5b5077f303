"""
Records kept by the gate's stores
"""

import secrets
from enum import Enum
from typing import Dict, List, Optional, Tuple
from datetime import datetime
from pydantic import BaseModel, Field, model_validator

from paygate.payments.models import utcnow


def new_id(prefix: str) -> str:
    """Random identifier such as "sess_3f9a..." or "budget_..." """
    return f"{prefix}_{secrets.token_hex(16)}"


class SessionKind(str, Enum):
    """How a session's access is bounded"""
    TIME = "time"
    REQUESTS = "requests"
    UNLIMITED = "unlimited"


class Session(BaseModel):
    """Pre-paid access grant for a payer"""
    id: str = Field(default_factory=lambda: new_id("sess"))
    payer_address: str = ""
    kind: SessionKind = SessionKind.TIME
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: datetime
    max_requests: int = Field(default=0, description="Request cap, only for request-bounded sessions")
    used_requests: int = 0
    amount_paid: int = 0
    currency: str = "USD"
    allowed_endpoints: List[str] = Field(default_factory=list, description="Empty means all endpoints")
    metadata: Dict[str, str] = Field(default_factory=dict)
    active: bool = True

    @property
    def remaining_requests(self) -> Optional[int]:
        if self.kind != SessionKind.REQUESTS:
            return None
        return max(self.max_requests - self.used_requests, 0)


class Budget(BaseModel):
    """Pre-authorized spending allowance for an agent"""
    id: str = Field(default_factory=lambda: new_id("budget"))
    agent_id: str
    wallet_address: str = ""
    total: int = Field(ge=0)
    remaining: Optional[int] = Field(default=None, description="Defaults to total")
    spent: int = 0
    request_count: int = 0
    currency: str = "USD"
    created_at: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def default_remaining(self) -> "Budget":
        if self.remaining is None:
            self.remaining = self.total
        return self

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) >= self.expires_at


class UsageMetric(BaseModel):
    """One gated request as seen by the meter"""
    timestamp: datetime = Field(default_factory=utcnow)
    endpoint: str
    method: str = "GET"
    payer_id: str = ""
    amount_paid: int = 0
    currency: str = "USDC"
    response_code: int = 200
    latency_ms: int = 0
    payment_type: str = "per-request"
    session_id: str = ""
    user_agent: str = ""
    is_ai_agent: bool = False


class MetricsFilter(BaseModel):
    """Selection applied before aggregation; bounds are inclusive"""
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    endpoint: str = ""
    payer_id: str = ""
    payment_type: str = ""
    ai_agents_only: bool = False

    def matches(self, metric: UsageMetric) -> bool:
        if self.start_time and metric.timestamp < self.start_time:
            return False
        if self.end_time and metric.timestamp > self.end_time:
            return False
        if self.endpoint and metric.endpoint != self.endpoint:
            return False
        if self.payer_id and metric.payer_id != self.payer_id:
            return False
        if self.payment_type and metric.payment_type != self.payment_type:
            return False
        if self.ai_agents_only and not metric.is_ai_agent:
            return False
        return True


class EndpointStats(BaseModel):
    endpoint: str
    total_requests: int = 0
    total_revenue: int = 0
    avg_latency_ms: float = 0.0
    error_rate: float = 0.0
    unique_users: int = 0


class PayerStats(BaseModel):
    payer_id: str
    total_requests: int = 0
    total_spent: int = 0
    last_seen: Optional[datetime] = None
    is_ai_agent: bool = False


class MetricsReport(BaseModel):
    """Aggregated view over the metering buffer"""
    period: str = "all"
    total_requests: int = 0
    total_revenue: int = 0
    currency: str = "USDC"
    unique_users: int = 0
    avg_latency_ms: float = 0.0
    requests_by_hour: Dict[int, int] = Field(default_factory=lambda: {h: 0 for h in range(24)})
    revenue_by_hour: Dict[int, int] = Field(default_factory=lambda: {h: 0 for h in range(24)})
    top_endpoints: List[EndpointStats] = Field(default_factory=list)
    top_payers: List[PayerStats] = Field(default_factory=list)
    ai_agent_requests: int = 0
    ai_agent_revenue: int = 0
    error_rate: float = 0.0


class IdempotencyRecord(BaseModel):
    """A completed response kept for replay under its idempotency key"""
    key: str
    method: str = ""
    path: str = ""
    status_code: int
    headers: List[Tuple[str, str]] = Field(default_factory=list, description="Raw header pairs in order")
    body: bytes = b""
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
