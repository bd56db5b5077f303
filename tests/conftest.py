"""
Pytest configuration and shared fixtures
"""

import json
import pytest
import httpx
from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient
from starlette.requests import Request as StarletteRequest

from paygate.gateway.server import create_app
from paygate.payments.facilitator import FacilitatorClient
from paygate.payments.registry import SchemeRegistry
from paygate.payments.verifiers import ExactSchemeVerifier, TokenVerifier
from tests.factories import FACILITATOR_URL, PAYER, VALID_SIGNATURE, GatewayConfigFactory


def facilitator_handler(request: httpx.Request) -> httpx.Response:
    """Accepts proofs signed with VALID_SIGNATURE and settles them"""
    body = json.loads(request.content)
    payload = body["paymentPayload"].get("payload") or {}
    signed = isinstance(payload, dict) and payload.get("signature") == VALID_SIGNATURE

    if request.url.path.endswith("/verify"):
        if signed:
            return httpx.Response(200, json={"isValid": True, "payer": PAYER})
        return httpx.Response(200, json={"isValid": False, "invalidReason": "invalid signature"})
    if request.url.path.endswith("/settle"):
        return httpx.Response(200, json={"success": True, "transaction": "0xsettled", "network": "eip155:84532"})
    return httpx.Response(404, json={"error": "not found"})


def build_protected_router() -> APIRouter:
    router = APIRouter(prefix="/api")

    @router.get("/data")
    async def get_data(request: Request, limit: int = 10):
        """Sample data behind the gate"""
        payment = request.state.payment
        return {
            "data": list(range(3)),
            "scheme": payment.scheme,
            "payer": payment.payer,
            "source": payment.source,
        }

    @router.get("/premium")
    async def get_premium():
        """Premium content"""
        return {"content": "premium"}

    @router.get("/fail")
    async def get_fail():
        return JSONResponse(status_code=500, content={"error": "backend failure"})

    @router.post("/orders")
    async def create_order(request: Request):
        """Create an order; counts how often the handler actually ran"""
        request.app.state.order_count += 1
        return {"order": request.app.state.order_count}

    return router


@pytest.fixture
def facilitator_client() -> FacilitatorClient:
    """Facilitator backed by an in-process mock transport"""
    transport = httpx.MockTransport(facilitator_handler)
    return FacilitatorClient(FACILITATOR_URL, client=httpx.AsyncClient(transport=transport))


@pytest.fixture
def registry(facilitator_client) -> SchemeRegistry:
    registry = SchemeRegistry()
    registry.register(ExactSchemeVerifier(facilitator=facilitator_client))
    registry.register(TokenVerifier.prefixed("valid_"))
    return registry


@pytest.fixture
def make_app(registry):
    """Build an app with config overrides"""
    def _make(**overrides):
        config = GatewayConfigFactory(**overrides)
        app = create_app(config, registry=registry, routers=[build_protected_router()])
        app.state.order_count = 0
        return app
    return _make


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def gate(app):
    return app.state.gate


@pytest.fixture
def client(app) -> TestClient:
    """Create FastAPI test client (sync)"""
    return TestClient(app)


def make_request(headers=None, path: str = "/api/data", method: str = "GET", query: str = "") -> StarletteRequest:
    """Bare request for exercising the gate without the app"""
    return StarletteRequest({
        "type": "http",
        "method": method,
        "path": path,
        "headers": [(k.lower().encode("latin-1"), v.encode("latin-1")) for k, v in (headers or {}).items()],
        "query_string": query.encode("latin-1"),
    })
