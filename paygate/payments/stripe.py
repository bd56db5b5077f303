"""
Card payments through a Stripe-compatible processor

The processor is just another scheme in the registry ("stripe-payment"): the
client pays a payment intent out of band and presents its id as the proof.
"""

import hmac
import time
import hashlib
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field

from paygate.payments.errors import CollaboratorError
from paygate.payments.models import (
    PaymentProof,
    PaymentRequirement,
    RailType,
    SettlementResult,
    VerificationResult,
)
from paygate.payments.networks import SCHEME_STRIPE, STRIPE_LIVE, STRIPE_TEST
from paygate.payments.registry import PaymentVerifier

logger = structlog.get_logger()

# Processor fee: 2.9% + 30 minor units
FEE_RATE = 0.029
FEE_FIXED = 30

VALID_INTENT_STATUSES = ("succeeded", "requires_capture")
WEBHOOK_TOLERANCE_SECONDS = 300


def processing_fee(amount: int) -> int:
    return int(amount * FEE_RATE) + FEE_FIXED


class PaymentIntent(BaseModel):
    """Payment intent created for a client to pay by card"""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    amount: int
    currency: str
    status: str
    client_secret: str = Field(default="", alias="clientSecret")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    metadata: Dict[str, str] = Field(default_factory=dict)


class RefundResult(BaseModel):
    """Outcome of a refund request"""
    success: bool
    refund_id: str = ""
    amount: int = 0
    status: str = ""


class CardRail(PaymentVerifier):
    """
    Stripe-compatible card rail.

    Verification retrieves the payment intent and checks status, amount and
    currency. Intents that are authorized but not captured verify as valid and
    are captured during settlement.
    """

    scheme = SCHEME_STRIPE
    rail_type = RailType.FIAT
    display_name = "Credit/Debit Card (Stripe)"
    supported_currencies = ["USD", "EUR", "GBP", "CAD", "AUD", "JPY"]

    def __init__(
        self,
        secret_key: str,
        webhook_secret: str = "",
        base_url: str = "https://api.stripe.com/v1",
        sandbox: bool = True,
        currency: str = "USD",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.base_url = base_url.rstrip("/")
        self.sandbox = sandbox
        self.currency = currency
        self.timeout = timeout
        self._client = client

    def supported_networks(self) -> List[str]:
        return [STRIPE_TEST] if self.sandbox else [STRIPE_LIVE]

    async def _request(
        self,
        method: str,
        path: str,
        data: Optional[Dict[str, Any]] = None,
        idempotency_key: str = "",
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.secret_key}"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        try:
            if self._client is not None:
                response = await self._client.request(
                    method, url, data=data, headers=headers, timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.request(method, url, data=data, headers=headers)
        except httpx.HTTPError as e:
            logger.error("card_processor_request_failed", url=url, error=str(e))
            raise CollaboratorError(f"card processor unreachable: {e}")

        if response.status_code != 200:
            logger.warning(
                "card_processor_error",
                url=url,
                status_code=response.status_code,
                body=response.text[:200],
            )
            raise CollaboratorError(
                f"card processor returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            raise CollaboratorError("card processor returned invalid JSON")

    @staticmethod
    def intent_id(proof: PaymentProof) -> str:
        if proof.payment_intent_id:
            return proof.payment_intent_id
        if isinstance(proof.payload, dict):
            return str(proof.payload.get("paymentIntentId", ""))
        if isinstance(proof.payload, str):
            return proof.payload
        return ""

    def expected_currency(self, requirement: PaymentRequirement) -> str:
        if requirement.extra and requirement.extra.get("currency"):
            return str(requirement.extra["currency"])
        return self.currency

    async def verify(
        self, proof: PaymentProof, requirement: PaymentRequirement
    ) -> VerificationResult:
        network = proof.network or self.supported_networks()[0]
        intent_id = self.intent_id(proof)
        if not intent_id:
            return VerificationResult(
                valid=False, message="missing payment intent id", scheme=self.scheme, network=network
            )

        intent = await self._request("GET", f"/payment_intents/{intent_id}")
        status = intent.get("status", "")
        amount = int(intent.get("amount", 0))
        currency = str(intent.get("currency", "")).upper()
        expected_currency = self.expected_currency(requirement).upper()

        valid = (
            status in VALID_INTENT_STATUSES
            and amount >= requirement.amount
            and currency == expected_currency
        )
        return VerificationResult(
            valid=valid,
            message=f"payment status: {status}",
            scheme=self.scheme,
            network=network,
            amount=amount,
            currency=currency,
            payer=intent.get("customer") or "",
            pay_to=requirement.pay_to,
            payment_id=intent.get("id", intent_id),
            requires_settlement=status == "requires_capture",
        )

    async def settle(
        self,
        proof: PaymentProof,
        requirement: PaymentRequirement,
        verification: VerificationResult,
    ) -> SettlementResult:
        return await self.capture(verification.payment_id or self.intent_id(proof))

    async def capture(self, payment_id: str, amount: int = 0) -> SettlementResult:
        """Capture an authorized intent, optionally for less than the authorized amount"""
        data = {"amount_to_capture": str(amount)} if amount > 0 else None
        intent = await self._request("POST", f"/payment_intents/{payment_id}/capture", data=data)
        gross = int(intent.get("amount", 0))
        fee = processing_fee(gross)
        status = intent.get("status", "")
        return SettlementResult(
            success=status == "succeeded",
            message=f"capture status: {status}",
            transaction_id=intent.get("id", payment_id),
            gross_amount=gross,
            fee_amount=fee,
            net_amount=gross - fee,
        )

    async def create_payment_intent(
        self,
        amount: int,
        resource: str,
        currency: str = "",
        description: str = "",
        customer_id: str = "",
        metadata: Optional[Dict[str, str]] = None,
        idempotency_key: str = "",
    ) -> PaymentIntent:
        """Create an intent the client can confirm with its card"""
        currency = (currency or self.currency).lower()
        data: Dict[str, Any] = {
            "amount": str(amount),
            "currency": currency,
            "description": description or f"Access to {resource}",
            "metadata[resource]": resource,
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = value
        if customer_id:
            data["customer"] = customer_id

        intent = await self._request("POST", "/payment_intents", data=data, idempotency_key=idempotency_key)
        created = intent.get("created")
        logger.info("payment_intent_created", intent_id=intent.get("id"), amount=amount, resource=resource)
        return PaymentIntent(
            id=intent.get("id", ""),
            amount=int(intent.get("amount", amount)),
            currency=str(intent.get("currency", currency)).upper(),
            status=intent.get("status", ""),
            client_secret=intent.get("client_secret", ""),
            created_at=datetime.fromtimestamp(created, tz=timezone.utc) if created else None,
            metadata=metadata or {},
        )

    async def refund(self, payment_id: str, amount: int = 0, reason: str = "") -> RefundResult:
        data: Dict[str, Any] = {"payment_intent": payment_id}
        if amount > 0:
            data["amount"] = str(amount)
        if reason:
            data["reason"] = reason
        refund = await self._request("POST", "/refunds", data=data)
        status = refund.get("status", "")
        logger.info("payment_refunded", payment_id=payment_id, refund_id=refund.get("id"), status=status)
        return RefundResult(
            success=status == "succeeded",
            refund_id=refund.get("id", ""),
            amount=int(refund.get("amount", amount)),
            status=status,
        )

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature_header: str,
        tolerance: int = WEBHOOK_TOLERANCE_SECONDS,
        now: Optional[int] = None,
    ) -> bool:
        """
        Check a `t=<timestamp>,v1=<hex hmac>` signature header.

        The signed message is "<timestamp>.<raw body>" keyed with the webhook
        secret. Without a configured secret nothing verifies.
        """
        if not self.webhook_secret:
            logger.warning("webhook_secret_not_configured")
            return False

        timestamp = ""
        signatures = []
        for part in signature_header.split(","):
            key, _, value = part.strip().partition("=")
            if key == "t":
                timestamp = value
            elif key == "v1":
                signatures.append(value)
        if not timestamp or not signatures:
            return False

        try:
            signed_at = int(timestamp)
        except ValueError:
            return False
        current = int(time.time()) if now is None else now
        if tolerance and abs(current - signed_at) > tolerance:
            return False

        expected = hmac.new(
            self.webhook_secret.encode("utf-8"),
            f"{timestamp}.".encode("utf-8") + payload,
            hashlib.sha256,
        ).hexdigest()
        return any(hmac.compare_digest(expected, sig) for sig in signatures)
