"""
x402 PayGate Server
FastAPI application with the payment gate in front of every non-exempt route
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

import httpx
import structlog
import uvicorn
from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from paygate import __version__
from paygate.config import GatewayConfig, get_gateway_config
from paygate.gateway.gate import PaymentGate, PaymentGateMiddleware
from paygate.gateway.responses import error_response
from paygate.gateway.routers import budgets, discovery, metrics, sessions
from paygate.gateway.tasks import run_maintenance_tasks
from paygate.logs import configure_logging
from paygate.payments.errors import PaymentGateError
from paygate.payments.facilitator import FacilitatorClient
from paygate.payments.registry import SchemeRegistry
from paygate.payments.stripe import CardRail
from paygate.payments.verifiers import ExactSchemeVerifier, HTTPTokenVerifier, TokenVerifier
from paygate.stores import (
    BudgetStore,
    IdempotencyStore,
    InMemoryBudgetStore,
    InMemoryIdempotencyStore,
    InMemoryMeteringStore,
    InMemorySessionStore,
    MeteringStore,
    SessionStore,
)

logger = structlog.get_logger()


def build_registry(config: GatewayConfig, client: Optional[httpx.AsyncClient] = None) -> SchemeRegistry:
    """Register the verifiers the configuration enables"""
    registry = SchemeRegistry()

    def facilitator(url: str) -> FacilitatorClient:
        return FacilitatorClient(
            url,
            api_key=config.facilitator_api_key,
            timeout=config.facilitator_timeout,
            client=client,
        )

    registry.register(
        ExactSchemeVerifier(
            facilitator=facilitator(config.facilitator_url) if config.facilitator_url else None,
            facilitators={pattern: facilitator(url) for pattern, url in config.facilitator_urls.items()},
            currency=config.metering_currency,
        )
    )

    if config.token_verify_url:
        registry.register(
            HTTPTokenVerifier(
                config.token_verify_url,
                api_key=config.token_verify_api_key,
                timeout=config.facilitator_timeout,
                client=client,
            )
        )
    elif config.static_tokens:
        registry.register(TokenVerifier.static(config.static_tokens))
    elif config.token_prefix:
        registry.register(TokenVerifier.prefixed(config.token_prefix))

    if config.stripe_secret_key:
        registry.register(
            CardRail(
                config.stripe_secret_key,
                webhook_secret=config.stripe_webhook_secret,
                base_url=config.stripe_api_base,
                sandbox=config.stripe_sandbox,
                currency=config.currency,
                client=client,
            )
        )
    return registry


def create_app(
    config: Optional[GatewayConfig] = None,
    registry: Optional[SchemeRegistry] = None,
    session_store: Optional[SessionStore] = None,
    budget_store: Optional[BudgetStore] = None,
    metering_store: Optional[MeteringStore] = None,
    idempotency_store: Optional[IdempotencyStore] = None,
    routers: Optional[List[APIRouter]] = None,
) -> FastAPI:
    """
    Build the gateway application.

    Args:
        config: Settings, defaults to the environment-backed singleton
        registry: Scheme registry, built from the config when omitted
        session_store, budget_store, metering_store, idempotency_store:
            Store overrides, in-memory stores by default
        routers: Protected application routers to mount behind the gate

    Returns:
        The FastAPI app; the gate is available as app.state.gate
    """
    config = config or get_gateway_config()
    http_client = None
    if registry is None:
        http_client = httpx.AsyncClient(timeout=config.facilitator_timeout)
        registry = build_registry(config, http_client)

    prefix = config.management_prefix
    gate = PaymentGate(
        config,
        registry,
        sessions=session_store if session_store is not None else InMemorySessionStore(),
        budgets=(
            budget_store if budget_store is not None
            else InMemoryBudgetStore(default_ttl=config.budget_default_ttl)
        ),
        metering=(
            metering_store if metering_store is not None
            else InMemoryMeteringStore(config.metering_capacity, config.metering_currency)
        ),
        idempotency=(
            idempotency_store if idempotency_store is not None
            else InMemoryIdempotencyStore(ttl=config.idempotency_ttl)
        ),
        exempt_paths=config.exempt_paths + [f"{prefix}/"],
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle manager for the FastAPI app"""
        logger.info(
            "paygate_starting",
            host=config.gateway_host,
            port=config.gateway_port,
            schemes=registry.list_schemes(),
            networks=config.effective_networks,
        )
        maintenance = asyncio.create_task(run_maintenance_tasks(gate, config.maintenance_interval))
        yield
        maintenance.cancel()
        try:
            await maintenance
        except asyncio.CancelledError:
            pass
        if http_client is not None:
            await http_client.aclose()
        logger.info("paygate_shutting_down")

    app = FastAPI(
        title="x402 PayGate",
        description="HTTP 402 payment gate with sessions, budgets and metering",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gate = gate

    @app.exception_handler(PaymentGateError)
    async def payment_gate_error_handler(request: Request, exc: PaymentGateError):
        return error_response(exc.status_code, exc.code, exc.message)

    @app.get("/health", tags=["Health"])
    async def health_check():
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "schemes": registry.list_schemes(),
        }

    app.include_router(discovery.manifest_router)
    app.include_router(sessions.router, prefix=prefix)
    app.include_router(budgets.router, prefix=prefix)
    app.include_router(metrics.router, prefix=prefix)
    app.include_router(discovery.router, prefix=prefix)
    for router in routers or []:
        app.include_router(router)

    # The gate runs inside CORS so preflight requests are answered before payment
    app.add_middleware(PaymentGateMiddleware, gate=gate)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["PAYMENT-REQUIRED", "X-Payment-Verified", "X-Payment-ID"],
    )
    return app


# =============================================================================
# Demo backend
# =============================================================================

demo_router = APIRouter(prefix="/api", tags=["Demo"])


@demo_router.get("/data")
async def get_data(request: Request):
    """Protected sample data"""
    payment = getattr(request.state, "payment", None)
    return {
        "data": [1, 2, 3],
        "paid_by": payment.payer if payment else None,
        "scheme": payment.scheme if payment else None,
    }


@demo_router.get("/premium")
async def get_premium(request: Request):
    """Premium content"""
    return {"content": "premium", "tier": "gold"}


def main():
    config = get_gateway_config()
    configure_logging(config.log_level, config.log_format)
    app = create_app(config, routers=[demo_router])
    uvicorn.run(app, host=config.gateway_host, port=config.gateway_port, log_level=config.log_level.lower())


if __name__ == "__main__":
    main()
