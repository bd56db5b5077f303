"""
Gateway module for x402 PayGate
Provides the payment gate middleware and the FastAPI application factory
"""

from paygate.gateway.gate import PaymentGate, PaymentGateMiddleware
from paygate.gateway.pricing import PricingPolicy

__all__ = ["PaymentGate", "PaymentGateMiddleware", "PricingPolicy"]
