"""
PayGate Payment Module
x402 proof models, codec, scheme registry and built-in verifiers
"""

from paygate.payments.models import (
    PaymentRequirement,
    PaymentRequired,
    PaymentProof,
    VerificationResult,
    SettlementResult,
    CompletedPayment,
    RailType,
)
from paygate.payments.registry import PaymentVerifier, SchemeRegistry
from paygate.payments.verifiers import ExactSchemeVerifier, TokenVerifier, HTTPTokenVerifier
from paygate.payments.stripe import CardRail

__all__ = [
    "PaymentRequirement",
    "PaymentRequired",
    "PaymentProof",
    "VerificationResult",
    "SettlementResult",
    "CompletedPayment",
    "RailType",
    "PaymentVerifier",
    "SchemeRegistry",
    "ExactSchemeVerifier",
    "TokenVerifier",
    "HTTPTokenVerifier",
    "CardRail",
]
