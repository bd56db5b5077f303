"""
Built-in payment verifiers: facilitator-backed exact scheme and opaque tokens
"""

import time
import inspect
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Union

import httpx
import structlog

from paygate.payments.errors import CollaboratorError
from paygate.payments.facilitator import FacilitatorClient
from paygate.payments.models import (
    PaymentProof,
    PaymentRequirement,
    RailType,
    SettlementResult,
    VerificationResult,
)
from paygate.payments.networks import (
    EVM_NETWORKS,
    EVM_WILDCARD,
    SCHEME_EXACT,
    SCHEME_TOKEN,
    SOLANA_NETWORKS,
    SOLANA_WILDCARD,
    is_wildcard_match,
)
from paygate.payments.registry import PaymentVerifier

logger = structlog.get_logger()


class ExactSchemeVerifier(PaymentVerifier):
    """
    "exact" scheme: the client signs a transfer of exactly the required amount.

    Cheap local checks run first (freshness, declared recipient and value);
    the signature check and the settlement are delegated to the facilitator
    configured for the proof's network.
    """

    scheme = SCHEME_EXACT
    rail_type = RailType.CRYPTO
    display_name = "Exact amount (x402)"

    def __init__(
        self,
        facilitator: Optional[FacilitatorClient] = None,
        facilitators: Optional[Dict[str, FacilitatorClient]] = None,
        networks: Optional[List[str]] = None,
        currency: str = "USDC",
    ):
        self.facilitator = facilitator
        self.facilitators = facilitators or {}
        self.networks = networks or EVM_NETWORKS + [EVM_WILDCARD] + SOLANA_NETWORKS + [SOLANA_WILDCARD]
        self.currency = currency

    def supported_networks(self) -> List[str]:
        return list(self.networks)

    def facilitator_for(self, network: str) -> Optional[FacilitatorClient]:
        """Exact network mapping wins over wildcard mappings, then the default"""
        if network in self.facilitators:
            return self.facilitators[network]
        for pattern, client in self.facilitators.items():
            if is_wildcard_match(pattern, network):
                return client
        return self.facilitator

    @staticmethod
    def _authorization(proof: PaymentProof) -> Dict:
        if isinstance(proof.payload, dict):
            auth = proof.payload.get("authorization")
            if isinstance(auth, dict):
                return auth
        return {}

    def _precheck(self, proof: PaymentProof, requirement: PaymentRequirement) -> Optional[str]:
        if proof.timestamp is not None:
            age = int(time.time()) - proof.timestamp
            if age > requirement.max_timeout_seconds:
                return "payment proof expired"

        auth = self._authorization(proof)
        recipient = auth.get("to")
        if recipient is not None and not isinstance(recipient, str):
            return "payment recipient is not an address"
        if recipient and requirement.pay_to and recipient.lower() != requirement.pay_to.lower():
            return "payment recipient does not match"
        value = auth.get("value")
        if isinstance(value, (bool, float)):
            return "payment amount is not an integer"
        if value is not None:
            try:
                if int(value) < requirement.amount:
                    return "payment amount is below the required amount"
            except (TypeError, ValueError):
                return "payment amount is not an integer"
        return None

    async def verify(
        self, proof: PaymentProof, requirement: PaymentRequirement
    ) -> VerificationResult:
        network = proof.network or requirement.network
        reason = self._precheck(proof, requirement)
        if reason:
            return VerificationResult(valid=False, message=reason, scheme=self.scheme, network=network)

        facilitator = self.facilitator_for(network)
        if facilitator is None:
            return VerificationResult(
                valid=False,
                message=f"no facilitator configured for {network}",
                scheme=self.scheme,
                network=network,
            )

        response = await facilitator.verify(proof, requirement)
        if not response.valid:
            return VerificationResult(
                valid=False,
                message=response.message or "facilitator rejected payment",
                scheme=self.scheme,
                network=network,
            )

        payer = response.payer or proof.payer or str(self._authorization(proof).get("from") or "")
        return VerificationResult(
            valid=True,
            message="verified by facilitator",
            scheme=self.scheme,
            network=network,
            amount=requirement.amount,
            currency=self.currency,
            payer=payer,
            pay_to=requirement.pay_to,
            payment_id=proof.nonce or str(self._authorization(proof).get("nonce", "")),
            requires_settlement=True,
        )

    async def settle(
        self,
        proof: PaymentProof,
        requirement: PaymentRequirement,
        verification: VerificationResult,
    ) -> SettlementResult:
        facilitator = self.facilitator_for(verification.network or proof.network)
        if facilitator is None:
            return SettlementResult(success=False, message="no facilitator configured")

        response = await facilitator.settle(proof, requirement)
        if not response.success:
            return SettlementResult(
                success=False,
                message=response.error_reason or "settlement failed",
            )
        return SettlementResult(
            success=True,
            message="settled",
            transaction_id=response.transaction_id,
            gross_amount=verification.amount,
            net_amount=verification.amount,
        )


TokenCheck = Callable[[str], Union[bool, Awaitable[bool]]]


class TokenVerifier(PaymentVerifier):
    """
    Opaque bearer tokens (Authorization, X-Payment-Token, payment_token).

    A token proves payment when the check callable accepts it. Tokens are
    pre-paid elsewhere, so there is nothing to settle.
    """

    scheme = SCHEME_TOKEN
    rail_type = RailType.TOKEN
    display_name = "Payment token"

    def __init__(self, check: TokenCheck):
        self._check = check

    @classmethod
    def static(cls, tokens: Iterable[str]) -> "TokenVerifier":
        accepted = frozenset(tokens)
        return cls(lambda token: token in accepted)

    @classmethod
    def prefixed(cls, prefix: str) -> "TokenVerifier":
        if not prefix:
            raise ValueError("token prefix must not be empty")
        return cls(lambda token: token.startswith(prefix) and len(token) > len(prefix))

    def supported_networks(self) -> List[str]:
        return []

    def supports_network(self, network: str) -> bool:
        return not network

    async def _accepts(self, token: str) -> bool:
        result = self._check(token)
        if inspect.isawaitable(result):
            result = await result
        return bool(result)

    async def verify(
        self, proof: PaymentProof, requirement: PaymentRequirement
    ) -> VerificationResult:
        token = proof.payload if isinstance(proof.payload, str) else ""
        if not token or not await self._accepts(token):
            return VerificationResult(valid=False, message="invalid payment token", scheme=self.scheme)
        return VerificationResult(
            valid=True,
            message="token accepted",
            scheme=self.scheme,
            amount=requirement.amount,
            payer=proof.payer or "",
            pay_to=requirement.pay_to,
        )


class HTTPTokenVerifier(TokenVerifier):
    """Validates tokens against a remote endpoint"""

    display_name = "Payment token (remote)"

    def __init__(
        self,
        endpoint: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(self._remote_check)
        self.endpoint = endpoint
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    async def _remote_check(self, token: str) -> bool:
        headers = {"Authorization": f"Bearer {token}"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            if self._client is not None:
                response = await self._client.get(self.endpoint, headers=headers, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(self.endpoint, headers=headers)
        except httpx.HTTPError as e:
            logger.error("token_verification_request_failed", endpoint=self.endpoint, error=str(e))
            raise CollaboratorError(f"token verifier unreachable: {e}")

        if response.status_code != 200:
            return False
        try:
            return bool(response.json().get("valid", False))
        except ValueError:
            return False
