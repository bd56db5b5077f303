"""
Payment gate error taxonomy

Every rejection raised inside the gate is one of these. Proof-level failures
share status 402 and collapse to the same client-facing body; the code is kept
for logs and the management API.
"""

from typing import Optional


class PaymentGateError(Exception):
    """Base class for gate rejections"""

    code = "SERVER_ERROR"
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class ProofMissing(PaymentGateError):
    code = "PAYMENT_REQUIRED"
    status_code = 402


class ProofMalformed(PaymentGateError):
    code = "INVALID_PAYMENT"
    status_code = 402


class SchemeUnsupported(PaymentGateError):
    code = "INVALID_PAYMENT"
    status_code = 402


class VerificationFailed(PaymentGateError):
    code = "INVALID_PAYMENT"
    status_code = 402


class CaptureFailed(PaymentGateError):
    code = "INVALID_PAYMENT"
    status_code = 402


class BudgetExhausted(PaymentGateError):
    """Deduction larger than what is left on a budget"""

    code = "INSUFFICIENT_BUDGET"
    status_code = 402

    def __init__(
        self,
        message: str = "insufficient budget",
        required: int = 0,
        available: int = 0,
        budget_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.required = required
        self.available = available
        self.budget_id = budget_id


InsufficientBudget = BudgetExhausted


class AgentBudgetExceeded(BudgetExhausted):
    """Price above the budget an agent declared in X-Agent-Budget"""


class SessionInvalid(PaymentGateError):
    code = "INVALID_SESSION"
    status_code = 401

    def __init__(self, reason: str, session_id: Optional[str] = None):
        super().__init__(reason)
        self.reason = reason
        self.session_id = session_id


class StoreNotFound(PaymentGateError):
    code = "NOT_FOUND"
    status_code = 404


class IdempotencyConflict(PaymentGateError):
    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409


class InvalidRefund(PaymentGateError):
    """Refund larger than the amount spent so far"""

    code = "INVALID_REQUEST"
    status_code = 400


class CollaboratorError(Exception):
    """Transport or protocol failure talking to a facilitator or processor"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
