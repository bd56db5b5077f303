"""
HTTP client for x402 facilitators
"""

from typing import Any, Dict, Optional

import httpx
import structlog
from pydantic import BaseModel, Field, ValidationError, model_validator

from paygate.payments.errors import CollaboratorError
from paygate.payments.models import X402_VERSION, PaymentProof, PaymentRequirement

logger = structlog.get_logger()


class FacilitatorVerifyResponse(BaseModel):
    """Facilitator /verify answer; accepts both valid/message and isValid/invalidReason"""
    valid: bool = False
    message: str = ""
    payer: str = ""

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "valid" not in data and "isValid" in data:
                data["valid"] = data["isValid"]
            if not data.get("message") and data.get("invalidReason"):
                data["message"] = data["invalidReason"]
            if data.get("payer") is None:
                data["payer"] = ""
        return data


class FacilitatorSettleResponse(BaseModel):
    """Facilitator /settle answer"""
    success: bool = False
    transaction_id: str = Field(default="", alias="transactionId")
    block_number: Optional[int] = Field(default=None, alias="blockNumber")
    error_reason: str = Field(default="", alias="errorReason")

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if not data.get("transactionId") and data.get("transaction"):
                data["transactionId"] = data["transaction"]
            if data.get("errorReason") is None:
                data["errorReason"] = ""
        return data


class FacilitatorClient:
    """
    Talks to one facilitator over HTTP.

    The facilitator performs the cryptographic check and the on-chain
    settlement; this client only shapes requests and answers.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._client = client

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    @staticmethod
    def _body(proof: PaymentProof, requirement: PaymentRequirement) -> Dict[str, Any]:
        return {
            "x402Version": X402_VERSION,
            "paymentPayload": proof.to_wire(),
            "paymentRequirements": requirement.to_wire(),
        }

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(
                    url, json=body, headers=self._headers(), timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=body, headers=self._headers())
        except httpx.HTTPError as e:
            logger.error("facilitator_request_failed", url=url, error=str(e))
            raise CollaboratorError(f"facilitator unreachable: {e}")

        if response.status_code >= 500:
            raise CollaboratorError(
                f"facilitator returned {response.status_code}",
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError:
            raise CollaboratorError("facilitator returned invalid JSON", status_code=response.status_code)

    async def verify(
        self, proof: PaymentProof, requirement: PaymentRequirement
    ) -> FacilitatorVerifyResponse:
        """
        Ask the facilitator whether a proof satisfies a requirement.

        Raises:
            CollaboratorError: facilitator unreachable or answered garbage
        """
        data = await self._post("/verify", self._body(proof, requirement))
        try:
            return FacilitatorVerifyResponse.model_validate(data)
        except ValidationError:
            raise CollaboratorError("unexpected facilitator verify response")

    async def settle(
        self, proof: PaymentProof, requirement: PaymentRequirement
    ) -> FacilitatorSettleResponse:
        """
        Ask the facilitator to settle a verified proof.

        Raises:
            CollaboratorError: facilitator unreachable or answered garbage
        """
        data = await self._post("/settle", self._body(proof, requirement))
        try:
            return FacilitatorSettleResponse.model_validate(data)
        except ValidationError:
            raise CollaboratorError("unexpected facilitator settle response")
