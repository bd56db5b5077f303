import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status
import structlog

from paygate.gateway.gate import PaymentGate

logger = structlog.get_logger()


def get_gate(request: Request) -> PaymentGate:
    """The gate installed on the application"""
    return request.app.state.gate


def require_admin(request: Request, x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Guard for operator endpoints when an admin key is configured"""
    expected = get_gate(request).config.admin_api_key
    if expected and not hmac.compare_digest(x_admin_key or "", expected):
        logger.warning("admin_auth_failed", path=request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid admin key")
