"""
Rejection responses produced by the gate
"""

from typing import Dict, List, Optional

from fastapi import status
from fastapi.responses import JSONResponse

from paygate.agents import RetryStrategy, format_budget_recommendation
from paygate.payments.codec import encode_payment_required
from paygate.payments.models import PaymentRequired, PaymentRequirement

PAYMENT_REQUIRED_MESSAGE = "Payment required - select a supported scheme and network"
BUDGET_EXHAUSTED_MESSAGE = "Pre-authorized budget exhausted"
AGENT_BUDGET_MESSAGE = "Agent budget exceeded"

PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
EXPOSED_HEADERS = ", ".join([
    PAYMENT_REQUIRED_HEADER,
    "X-Payment-Verified",
    "X-Payment-Scheme",
    "X-Payment-Network",
    "X-Payment-Rail",
    "X-Payment-ID",
    "X-Session-Remaining",
    "X-Budget-Remaining",
])


def payment_required_response(
    offers: List[PaymentRequirement],
    error: str = PAYMENT_REQUIRED_MESSAGE,
    headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """
    HTTP 402 listing every offer. The same document is sent base64-encoded in
    the PAYMENT-REQUIRED header for clients that only read headers.
    """
    body = PaymentRequired(accepts=offers, error=error)
    response_headers = {
        PAYMENT_REQUIRED_HEADER: encode_payment_required(body),
        "Access-Control-Expose-Headers": EXPOSED_HEADERS,
    }
    response_headers.update(headers or {})
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=body.to_wire(),
        headers=response_headers,
    )


def budget_exhausted_response(
    offers: List[PaymentRequirement],
    required: int,
    available: int,
    budget_id: Optional[str] = None,
    message: str = BUDGET_EXHAUSTED_MESSAGE,
    extra_headers: Optional[Dict[str, str]] = None,
) -> JSONResponse:
    """402 for a budget that cannot cover the request; retrying will not help"""
    body = PaymentRequired(accepts=offers, error=message).to_wire()
    body.update({
        "code": "INSUFFICIENT_BUDGET",
        "required": required,
        "available": available,
        "retryStrategy": RetryStrategy(shouldRetry=False, reason=message).model_dump(exclude_none=True),
        "budgetRecommendation": format_budget_recommendation(required, available),
    })
    if budget_id:
        body["budgetId"] = budget_id

    headers = {"Access-Control-Expose-Headers": EXPOSED_HEADERS}
    headers.update(extra_headers or {})
    return JSONResponse(status_code=status.HTTP_402_PAYMENT_REQUIRED, content=body, headers=headers)


def session_error_response(message: str, error: str = "session_error") -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_401_UNAUTHORIZED,
        content={"error": error, "message": message},
    )


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    """Structured error for the management API"""
    return JSONResponse(status_code=status_code, content={"error": code, "message": message})
