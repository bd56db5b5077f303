"""
x402 PayGate
Seller-side HTTP 402 payment gate with sessions, budgets, metering and idempotent replay
"""

__version__ = "0.1.0"
