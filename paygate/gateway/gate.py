"""
Payment gate

Sits in front of protected routes. A request passes when it is exempt, is
an idempotent replay, presents a live session, is covered by a
pre-authorized budget, or carries a payment proof that a registered scheme
verifies (and settles, when the scheme captures). Everything else receives
the same HTTP 402 listing every accepted offer.
"""

import time
from typing import Dict, List, Optional, Tuple

import structlog
from fastapi import Request, status
from fastapi.responses import Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from paygate.agents import AgentHeaders, calculate_batch_price, is_ai_agent
from paygate.config import GatewayConfig
from paygate.gateway.pricing import PricingPolicy
from paygate.gateway.responses import (
    AGENT_BUDGET_MESSAGE,
    budget_exhausted_response,
    error_response,
    payment_required_response,
    session_error_response,
)
from paygate.payments.codec import ProofSource, parse_proof
from paygate.payments.errors import (
    AgentBudgetExceeded,
    BudgetExhausted,
    CaptureFailed,
    CollaboratorError,
    IdempotencyConflict,
    InvalidRefund,
    PaymentGateError,
    ProofMissing,
    SchemeUnsupported,
    SessionInvalid,
    StoreNotFound,
    VerificationFailed,
)
from paygate.payments.models import (
    CompletedPayment,
    PaymentProof,
    PaymentRequirement,
    utcnow,
)
from paygate.payments.networks import SCHEME_TOKEN
from paygate.payments.registry import SchemeRegistry
from paygate.stores.base import BudgetStore, IdempotencyStore, MeteringStore, SessionStore
from paygate.stores.models import IdempotencyRecord, UsageMetric

logger = structlog.get_logger()

PAYMENT_TYPES = {"session": "session", "budget": "pre-auth", "proof": "per-request"}


class GateContext:
    """Per-request state accumulated while the gate decides"""

    def __init__(self, request: Request, price: int):
        self.method = request.method
        self.path = request.url.path
        self.user_agent = request.headers.get("user-agent", "")
        self.started = time.monotonic()
        self.started_at = utcnow()
        self.price = price
        self.is_agent = False
        self.agent: Optional[AgentHeaders] = None
        self.headers: Dict[str, str] = {}
        self.payment: Optional[CompletedPayment] = None
        self.budget_id: Optional[str] = None

    @property
    def latency_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)


class PaymentGate:
    """
    Decides whether a request may reach the protected handler.

    All collaborators are passed in; disabled features simply have no store.
    """

    def __init__(
        self,
        config: GatewayConfig,
        registry: SchemeRegistry,
        sessions: Optional[SessionStore] = None,
        budgets: Optional[BudgetStore] = None,
        metering: Optional[MeteringStore] = None,
        idempotency: Optional[IdempotencyStore] = None,
        exempt_paths: Optional[List[str]] = None,
    ):
        self.config = config
        self.registry = registry
        self.pricing = PricingPolicy(config, registry)
        self.sessions = sessions if config.sessions_enabled else None
        self.budgets = budgets if config.budgets_enabled else None
        self.metering = metering if config.metering_enabled else None
        self.idempotency = idempotency if config.idempotency_enabled else None
        self.exempt_paths = list(exempt_paths if exempt_paths is not None else config.exempt_paths)

    # =========================================================================
    # Routing
    # =========================================================================

    def is_exempt(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.exempt_paths if prefix)

    def extract_proof(self, request: Request) -> Optional[Tuple[str, ProofSource]]:
        """
        First non-empty proof in precedence order: PAYMENT-SIGNATURE,
        X-PAYMENT, Authorization with an accepted method, X-Payment-Token,
        the payment_token query parameter, X-Stripe-Payment-Intent.
        """
        headers = request.headers
        for name, source in (
            ("payment-signature", ProofSource.PAYMENT_SIGNATURE),
            ("x-payment", ProofSource.X_PAYMENT),
        ):
            value = headers.get(name, "").strip()
            if value:
                return value, source

        authorization = headers.get("authorization", "").strip()
        if authorization:
            method, _, token = authorization.partition(" ")
            token = token.strip()
            accepted = {m.lower() for m in self.config.accepted_methods}
            if token and method.lower() in accepted:
                return token, ProofSource.AUTHORIZATION

        token = headers.get("x-payment-token", "").strip()
        if token:
            return token, ProofSource.TOKEN_HEADER

        token = request.query_params.get("payment_token", "").strip()
        if token:
            return token, ProofSource.QUERY

        intent = headers.get("x-stripe-payment-intent", "").strip()
        if intent:
            return intent, ProofSource.CARD_INTENT
        return None

    # =========================================================================
    # Verification
    # =========================================================================

    async def verify_proof(
        self,
        proof: PaymentProof,
        method: str,
        path: str,
        price: int,
        offers: Optional[List[PaymentRequirement]] = None,
    ) -> CompletedPayment:
        """
        Verify a parsed proof against the endpoint's offers and settle it when
        the scheme requires capture.

        Raises:
            SchemeUnsupported, VerificationFailed, CaptureFailed
        """
        if proof.scheme == SCHEME_TOKEN:
            verifier = self.registry.resolve(SCHEME_TOKEN)
            requirement = self.pricing.requirement(SCHEME_TOKEN, "", path, price)
        else:
            if proof.scheme not in self.pricing.schemes_for(method, path):
                raise SchemeUnsupported(f"scheme {proof.scheme} is not accepted for {path}")
            verifier = self.registry.resolve(proof.scheme, proof.network)
            if offers is None:
                offers = self.pricing.offers(method, path, price)
            requirement = self.pricing.match_offer(offers, proof.scheme, proof.network)
            if requirement is None:
                raise SchemeUnsupported(
                    f"network {proof.network or '(none)'} is not accepted for {path}"
                )

        try:
            result = await verifier.verify(proof, requirement)
        except CollaboratorError as e:
            raise VerificationFailed(f"verifier unavailable: {e}")
        except PaymentGateError:
            raise
        except Exception as e:
            logger.error("verifier_error", scheme=proof.scheme, path=path, error=str(e))
            raise VerificationFailed("payment could not be verified")
        if not result.valid:
            raise VerificationFailed(result.message or "payment rejected")

        transaction_id = ""
        if result.requires_settlement:
            try:
                settlement = await verifier.settle(proof, requirement, result)
            except CollaboratorError as e:
                raise CaptureFailed(f"settlement unavailable: {e}")
            except PaymentGateError:
                raise
            except Exception as e:
                logger.error("settlement_error", scheme=proof.scheme, path=path, error=str(e))
                raise CaptureFailed("payment could not be settled")
            if not settlement.success:
                raise CaptureFailed(settlement.message or "settlement failed")
            transaction_id = settlement.transaction_id

        return CompletedPayment(
            scheme=verifier.scheme,
            network=result.network or requirement.network,
            rail=verifier.rail_type.value,
            amount=result.amount or price,
            payer=result.payer,
            payment_id=result.payment_id or transaction_id,
            transaction_id=transaction_id,
        )

    async def verify_grant(self, raw_proof: str, amount: int, resource: str) -> CompletedPayment:
        """
        Verify a proof supplied in a session or budget creation body.

        Raises:
            PaymentGateError: missing, malformed or rejected proof
        """
        if not raw_proof:
            raise ProofMissing("payment proof required")
        proof = parse_proof(raw_proof, ProofSource.TOKEN_HEADER)
        return await self.verify_proof(proof, "POST", resource, amount)

    def payment_required(self, method: str, path: str, price: Optional[int] = None) -> Response:
        return payment_required_response(self.pricing.offers(method, path, price))

    # =========================================================================
    # Request handling
    # =========================================================================

    async def handle(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if self.is_exempt(path):
            return await call_next(request)

        ctx = GateContext(request, self.pricing.price_for(request.method, path))
        self._apply_agent_pricing(request, ctx)

        idempotency_key = request.headers.get("idempotency-key", "") if self.idempotency is not None else ""
        if idempotency_key:
            replay = self._replay(idempotency_key, ctx)
            if replay is not None:
                return replay

        rejection = await self._authorize(request, ctx)
        if rejection is not None:
            self._meter(ctx, rejection.status_code)
            return rejection

        request.state.payment = ctx.payment
        try:
            response = await call_next(request)
        except Exception:
            self._refund_budget(ctx, "handler_exception")
            self._meter(ctx, status.HTTP_500_INTERNAL_SERVER_ERROR)
            raise

        if response.status_code >= 500:
            self._refund_budget(ctx, "handler_error")

        self._apply_success_headers(response, ctx)
        if idempotency_key and response.status_code < 500:
            response = await self._capture(idempotency_key, response, ctx)

        self._meter(ctx, response.status_code)
        return response

    def _apply_agent_pricing(self, request: Request, ctx: GateContext) -> None:
        config = self.config
        if not config.agent_detection_enabled or not is_ai_agent(request.headers):
            return
        ctx.is_agent = True
        ctx.agent = AgentHeaders.from_headers(request.headers)

        if config.agent_batch_pricing and ctx.agent.batch_size >= config.agent_min_batch_size:
            per_item = calculate_batch_price(ctx.price, config.agent_batch_discount)
            ctx.headers["X-Batch-Price-Per-Item"] = str(per_item)
        if config.agent_cost_estimation:
            ctx.headers["X-Estimated-Cost"] = str(ctx.price)
            ctx.headers["X-Currency"] = config.currency

    async def _authorize(self, request: Request, ctx: GateContext) -> Optional[Response]:
        """Return None when the request may proceed, otherwise the rejection"""
        offers: Optional[List[PaymentRequirement]] = None
        try:
            session_id = request.headers.get("x-session-id", "")
            if self.sessions is not None and session_id:
                try:
                    self._consume_session(session_id, ctx)
                except StoreNotFound:
                    logger.info("session_rejected", path=ctx.path, session_id=session_id, reason="not_found")
                    return session_error_response("Session not found or invalid", error="invalid_session")
                return None

            agent_id = request.headers.get("x-agent-id", "")
            if self.budgets is not None and agent_id and self._deduct_budget(agent_id, ctx):
                return None

            if (
                ctx.is_agent
                and self.config.agent_budget_awareness
                and ctx.agent.budget is not None
                and 0 < ctx.agent.budget < ctx.price
            ):
                raise AgentBudgetExceeded(
                    AGENT_BUDGET_MESSAGE, required=ctx.price, available=ctx.agent.budget
                )

            extracted = self.extract_proof(request)
            if extracted is None:
                raise ProofMissing("no payment proof presented")
            raw, source = extracted
            proof = parse_proof(raw, source)
            offers = self.pricing.offers(ctx.method, ctx.path, ctx.price)
            ctx.payment = await self.verify_proof(proof, ctx.method, ctx.path, ctx.price, offers)
            logger.info(
                "payment_verified",
                path=ctx.path,
                scheme=ctx.payment.scheme,
                network=ctx.payment.network,
                payer=ctx.payment.payer,
                amount=ctx.payment.amount,
                source=source.value,
            )
            return None

        except SessionInvalid as e:
            logger.info("session_rejected", path=ctx.path, session_id=e.session_id, reason=e.reason)
            return session_error_response(e.reason)
        except BudgetExhausted as e:
            logger.info(
                "budget_rejected",
                path=ctx.path,
                code=e.code,
                required=e.required,
                available=e.available,
                budget_id=e.budget_id,
            )
            headers = dict(ctx.headers)
            if isinstance(e, AgentBudgetExceeded):
                headers["X-Budget-Exceeded"] = "true"
            return budget_exhausted_response(
                offers if offers is not None else self.pricing.offers(ctx.method, ctx.path, ctx.price),
                required=e.required,
                available=e.available,
                budget_id=e.budget_id,
                message=e.message,
                extra_headers=headers,
            )
        except PaymentGateError as e:
            logger.info(
                "payment_rejected",
                path=ctx.path,
                code=e.code,
                error_type=type(e).__name__,
                reason=e.message,
            )
            headers = dict(ctx.headers)
            if ctx.is_agent and self.config.agent_retry_hints:
                retry_after = str(self.config.agent_retry_after)
                headers["Retry-After"] = retry_after
                headers["X-Recommended-Retry"] = retry_after
            return payment_required_response(
                offers if offers is not None else self.pricing.offers(ctx.method, ctx.path, ctx.price),
                headers=headers,
            )

    def _consume_session(self, session_id: str, ctx: GateContext) -> None:
        session = self.sessions.consume(session_id, ctx.path)
        ctx.payment = CompletedPayment(
            scheme="session",
            amount=0,
            payer=session.payer_address,
            payment_id=session.id,
            source="session",
        )
        remaining = session.remaining_requests
        if remaining is not None:
            ctx.headers["X-Session-Remaining"] = str(remaining)
        ctx.headers["X-Session-Expires"] = session.expires_at.isoformat()

    def _deduct_budget(self, agent_id: str, ctx: GateContext) -> bool:
        budget = self.budgets.get_by_agent(agent_id)
        if budget is None:
            return False
        budget = self.budgets.deduct(budget.id, ctx.price)
        ctx.budget_id = budget.id
        ctx.payment = CompletedPayment(
            scheme="budget",
            amount=ctx.price,
            payer=budget.wallet_address or agent_id,
            payment_id=budget.id,
            source="budget",
        )
        ctx.headers["X-Budget-Remaining"] = str(budget.remaining)
        ctx.headers["X-Budget-Deducted"] = str(ctx.price)
        if ctx.is_agent:
            ctx.headers["X-Remaining-Budget"] = str(budget.remaining)
        logger.info("budget_deducted", budget_id=budget.id, agent_id=agent_id, amount=ctx.price)
        return True

    def _refund_budget(self, ctx: GateContext, reason: str) -> None:
        if ctx.budget_id is None or self.budgets is None:
            return
        try:
            self.budgets.refund(ctx.budget_id, ctx.price)
            logger.info("budget_refunded", budget_id=ctx.budget_id, amount=ctx.price, reason=reason)
        except (StoreNotFound, InvalidRefund) as e:
            logger.warning("budget_refund_failed", budget_id=ctx.budget_id, error=str(e))

    def _apply_success_headers(self, response: Response, ctx: GateContext) -> None:
        payment = ctx.payment
        response.headers["X-Payment-Verified"] = "true"
        response.headers["X-Payment-Timestamp"] = str(int(payment.timestamp.timestamp()))
        for name, value in (
            ("X-Payment-Scheme", payment.scheme),
            ("X-Payment-Network", payment.network),
            ("X-Payment-Rail", payment.rail),
            ("X-Payment-ID", payment.payment_id),
        ):
            if value:
                response.headers[name] = value
        for name, value in ctx.headers.items():
            response.headers[name] = value
        if ctx.is_agent and self.config.agent_cost_estimation:
            response.headers["X-Actual-Cost"] = str(payment.amount)

    # =========================================================================
    # Idempotency
    # =========================================================================

    def _replay(self, key: str, ctx: GateContext) -> Optional[Response]:
        record = self.idempotency.get(key)
        if record is None:
            return None
        if (record.method, record.path) != (ctx.method, ctx.path):
            conflict = IdempotencyConflict(
                f"idempotency key already used for {record.method} {record.path}"
            )
            logger.warning("idempotency_conflict", key=key, path=ctx.path, original_path=record.path)
            response = error_response(status.HTTP_409_CONFLICT, conflict.code, conflict.message)
            self._meter(ctx, response.status_code)
            return response

        response = Response(content=record.body, status_code=record.status_code)
        response.raw_headers = [
            (name.encode("latin-1"), value.encode("latin-1")) for name, value in record.headers
        ]
        logger.info("idempotent_replay", key=key, path=ctx.path, status_code=record.status_code)
        self._meter(ctx, record.status_code, payment_type="replay")
        return response

    async def _capture(self, key: str, response: Response, ctx: GateContext) -> Response:
        """Buffer the downstream body, store it for replay and return an equivalent response"""
        body = b""
        async for chunk in response.body_iterator:
            body += chunk if isinstance(chunk, bytes) else chunk.encode("utf-8")

        headers = [
            (name.decode("latin-1"), value.decode("latin-1")) for name, value in response.raw_headers
        ]
        self.idempotency.set(
            key,
            IdempotencyRecord(
                key=key,
                method=ctx.method,
                path=ctx.path,
                status_code=response.status_code,
                headers=headers,
                body=body,
            ),
        )

        buffered = Response(content=body, status_code=response.status_code)
        buffered.raw_headers = list(response.raw_headers)
        return buffered

    # =========================================================================
    # Metering
    # =========================================================================

    def _meter(self, ctx: GateContext, status_code: int, payment_type: Optional[str] = None) -> None:
        if self.metering is None:
            return
        payment = ctx.payment
        if payment_type is None:
            if payment is None:
                payment_type = "none"
            else:
                payment_type = PAYMENT_TYPES.get(payment.source, "per-request")

        charged = 0
        if payment is not None and payment_type in ("per-request", "pre-auth"):
            charged = payment.amount
        # budget deductions are refunded when the handler fails
        if ctx.budget_id is not None and status_code >= 500:
            charged = 0

        self.metering.record(
            UsageMetric(
                timestamp=ctx.started_at,
                endpoint=ctx.path,
                method=ctx.method,
                payer_id=(payment.payer or payment.payment_id) if payment else "",
                amount_paid=charged,
                currency=self.config.metering_currency,
                response_code=status_code,
                latency_ms=ctx.latency_ms,
                payment_type=payment_type,
                session_id=payment.payment_id if payment and payment.source == "session" else "",
                user_agent=ctx.user_agent,
                is_ai_agent=ctx.is_agent,
            )
        )


class PaymentGateMiddleware(BaseHTTPMiddleware):
    """Starlette adapter running every request through a PaymentGate"""

    def __init__(self, app, gate: PaymentGate):
        super().__init__(app)
        self.gate = gate

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        return await self.gate.handle(request, call_next)
