import math
from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from paygate.config import GatewayConfig
from paygate.gateway.dependencies import get_gate, logger
from paygate.gateway.gate import PaymentGate
from paygate.gateway.models import (
    SessionCreateRequest,
    SessionCreateResponse,
    SessionPricingTier,
    parse_duration,
)
from paygate.payments.errors import PaymentGateError, StoreNotFound
from paygate.payments.models import utcnow
from paygate.stores.models import Session, SessionKind

router = APIRouter(prefix="/sessions", tags=["Sessions"])


def session_price(config: GatewayConfig, kind: SessionKind, duration: int, max_requests: int) -> int:
    """Request-bounded sessions are priced per request, the others per started hour"""
    if kind == SessionKind.REQUESTS:
        return max_requests * config.session_price_per_request
    return math.ceil(duration * config.session_price_per_hour / 3600)


def pricing_tiers(config: GatewayConfig) -> List[SessionPricingTier]:
    tiers = [
        SessionPricingTier(
            name="hourly",
            session_type=SessionKind.TIME,
            duration_seconds=3600,
            price=session_price(config, SessionKind.TIME, 3600, 0),
            currency=config.currency,
        ),
        SessionPricingTier(
            name="daily",
            session_type=SessionKind.TIME,
            duration_seconds=86400,
            price=session_price(config, SessionKind.TIME, 86400, 0),
            currency=config.currency,
        ),
        SessionPricingTier(
            name=f"{config.session_default_max_requests}-requests",
            session_type=SessionKind.REQUESTS,
            duration_seconds=config.session_default_duration,
            max_requests=config.session_default_max_requests,
            price=session_price(
                config, SessionKind.REQUESTS, 0, config.session_default_max_requests
            ),
            currency=config.currency,
        ),
    ]
    return tiers


def _sessions(gate: PaymentGate):
    if gate.sessions is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Sessions are disabled")
    return gate.sessions


@router.post("", status_code=status.HTTP_201_CREATED, response_model=SessionCreateResponse)
async def create_session(
    body: SessionCreateRequest,
    request: Request,
    gate: PaymentGate = Depends(get_gate),
):
    """
    Buy a session. The proof in the body must cover the session price, which
    depends on the kind, the duration and the request cap.
    """
    store = _sessions(gate)
    config = gate.config

    duration = parse_duration(body.duration) if body.duration else config.session_default_duration
    max_requests = body.max_requests or config.session_default_max_requests
    price = session_price(config, body.session_type, duration, max_requests)

    payer = body.payer_address
    amount_paid = 0
    if config.require_payment_for_grants:
        try:
            payment = await gate.verify_grant(body.payment_proof, price, request.url.path)
        except PaymentGateError as e:
            logger.info("session_payment_rejected", code=e.code, reason=e.message)
            return gate.payment_required("POST", request.url.path, price)
        payer = payer or payment.payer
        amount_paid = payment.amount

    now = utcnow()
    session = store.create(
        Session(
            payer_address=payer,
            kind=body.session_type,
            created_at=now,
            expires_at=now + timedelta(seconds=duration),
            max_requests=max_requests if body.session_type == SessionKind.REQUESTS else 0,
            amount_paid=amount_paid,
            currency=config.currency,
            allowed_endpoints=body.endpoints,
            metadata=body.metadata,
        )
    )
    return SessionCreateResponse(
        session_id=session.id,
        expires_at=session.expires_at,
        session_type=session.kind,
        price=price,
        currency=session.currency,
        max_requests=session.max_requests or None,
        remaining_requests=session.remaining_requests,
    )


@router.get("", response_model=List[Session])
async def list_sessions(payer: str, gate: PaymentGate = Depends(get_gate)):
    """Sessions bought by a payer"""
    return _sessions(gate).list_by_payer(payer)


@router.get("/pricing", response_model=dict)
async def get_pricing(gate: PaymentGate = Depends(get_gate)):
    return {"tiers": [t.model_dump(mode="json") for t in pricing_tiers(gate.config)]}


@router.get("/{session_id}", response_model=Session)
async def get_session(session_id: str, gate: PaymentGate = Depends(get_gate)):
    session = _sessions(gate).get(session_id)
    if session is None:
        raise StoreNotFound(f"Session {session_id} not found")
    return session


@router.delete("/{session_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_session(session_id: str, gate: PaymentGate = Depends(get_gate)):
    if not _sessions(gate).delete(session_id):
        raise StoreNotFound(f"Session {session_id} not found")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
