"""
x402-compliant payment models
Wire shapes use the protocol's camelCase names through aliases
"""

from enum import Enum
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
from pydantic import BaseModel, ConfigDict, Field

X402_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RailType(str, Enum):
    """Settlement rail a scheme runs on"""
    CRYPTO = "crypto"
    FIAT = "fiat"
    TOKEN = "token"


class PaymentRequirement(BaseModel):
    """Single payment offer in x402 format (one entry of `accepts`)"""
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    scheme: str = Field(default="exact", description="Payment scheme")
    network: str = Field(default="eip155:84532", description="CAIP-2 network identifier")
    max_amount_required: str = Field(alias="maxAmountRequired", description="Amount in smallest unit")
    resource: str = Field(description="Path being paid for")
    description: str = ""
    mime_type: Optional[str] = Field(default=None, alias="mimeType")
    pay_to: str = Field(default="", alias="payTo", description="Recipient address")
    max_timeout_seconds: int = Field(default=60, alias="maxTimeoutSeconds")
    asset: Optional[str] = None
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="outputSchema")
    extra: Optional[Dict[str, Any]] = None

    @property
    def amount(self) -> int:
        return int(self.max_amount_required)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequired(BaseModel):
    """x402 Payment Required response body (HTTP 402)"""
    x402Version: int = X402_VERSION
    accepts: List[PaymentRequirement]
    error: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentProof(BaseModel):
    """Payment proof presented by a client, in any of the accepted encodings"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    scheme: str
    network: str = ""
    payload: Any = Field(default=None, description="Scheme-specific body (signature, authorization, token)")
    payer: Optional[str] = None
    timestamp: Optional[int] = Field(default=None, description="Unix seconds declared by the client")
    nonce: Optional[str] = None
    signature: Optional[str] = None
    resource: Optional[str] = None
    payment_intent_id: Optional[str] = Field(default=None, alias="paymentIntentId")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class VerificationResult(BaseModel):
    """Outcome of checking a proof against one requirement"""
    valid: bool
    message: str = ""
    scheme: str = ""
    network: str = ""
    amount: int = 0
    currency: str = ""
    payer: str = ""
    pay_to: str = ""
    payment_id: str = ""
    requires_settlement: bool = False
    verified_at: datetime = Field(default_factory=utcnow)


class SettlementResult(BaseModel):
    """Outcome of capturing a verified payment"""
    success: bool
    message: str = ""
    transaction_id: str = ""
    transaction_url: Optional[str] = None
    gross_amount: int = 0
    fee_amount: int = 0
    net_amount: int = 0
    settled_at: datetime = Field(default_factory=utcnow)


class CompletedPayment(BaseModel):
    """Payment context attached to a request that passed the gate"""
    scheme: str
    network: str = ""
    rail: str = ""
    amount: int = 0
    payer: str = ""
    payment_id: str = ""
    transaction_id: str = ""
    source: str = Field(default="proof", description="proof, session or budget")
    timestamp: datetime = Field(default_factory=utcnow)
