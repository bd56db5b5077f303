"""
Request and response models for the management API
"""

import re
from typing import Dict, List, Optional
from datetime import datetime
from pydantic import BaseModel, Field, field_validator

from paygate.stores.models import SessionKind

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_UNIT_SECONDS = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> int:
    """
    Parse "90s", "30m", "1h30m", "7d" or a bare number of seconds.

    Raises:
        ValueError: unrecognized format or non-positive duration
    """
    value = value.strip()
    if value.isdigit():
        seconds = float(value)
    else:
        pos = 0
        seconds = 0.0
        for match in _DURATION_PART.finditer(value):
            if match.start() != pos:
                raise ValueError(f"invalid duration: {value}")
            seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            pos = match.end()
        if pos != len(value) or pos == 0:
            raise ValueError(f"invalid duration: {value}")
    if seconds <= 0:
        raise ValueError("duration must be positive")
    return int(seconds)


class SessionCreateRequest(BaseModel):
    """Body for POST /sessions"""
    payer_address: str = ""
    payment_proof: str = Field(default="", description="x402 proof paying for the session")
    session_type: SessionKind = SessionKind.TIME
    duration: Optional[str] = Field(default=None, description='e.g. "1h", "30m", "3600"')
    max_requests: Optional[int] = Field(default=None, gt=0)
    endpoints: List[str] = Field(default_factory=list)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_duration(v)
        return v


class SessionCreateResponse(BaseModel):
    session_id: str
    expires_at: datetime
    session_type: SessionKind
    price: int
    currency: str
    max_requests: Optional[int] = None
    remaining_requests: Optional[int] = None


class SessionPricingTier(BaseModel):
    name: str
    session_type: SessionKind
    duration_seconds: int
    max_requests: Optional[int] = None
    price: int
    currency: str


class BudgetCreateRequest(BaseModel):
    """Body for POST /budgets"""
    agent_id: str = Field(min_length=1)
    wallet_address: str = ""
    budget: int = Field(gt=0, description="Amount in smallest unit")
    payment_proof: str = ""
    expires_in: Optional[str] = Field(default=None, description='e.g. "24h", "7d"')
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("expires_in")
    @classmethod
    def validate_expires_in(cls, v: Optional[str]) -> Optional[str]:
        if v is not None:
            parse_duration(v)
        return v


class BudgetDeleteResponse(BaseModel):
    deleted: bool = True
    refunded: int
    total_spent: int


class PaymentIntentRequest(BaseModel):
    """Body for POST /payment-intents"""
    resource: str
    method: str = "GET"
    customer_id: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)


class PaymentMethodInfo(BaseModel):
    id: str
    displayName: str
    type: str
    networks: List[str]


class X402Manifest(BaseModel):
    """Machine-readable description of what the gateway sells and how to pay"""
    x402Version: int = 1
    name: str
    description: str
    schemes: List[str]
    networks: List[str]
    currency: str
    payTo: str
    pricePerRequest: int
    endpoints: Dict[str, str]
