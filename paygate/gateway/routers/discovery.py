from datetime import timedelta
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from paygate.agents import CostEstimate, calculate_batch_price
from paygate.gateway.dependencies import get_gate, logger
from paygate.gateway.gate import PaymentGate
from paygate.gateway.models import PaymentIntentRequest, PaymentMethodInfo, X402Manifest
from paygate.payments.errors import CollaboratorError
from paygate.payments.models import utcnow
from paygate.payments.networks import SCHEME_STRIPE
from paygate.payments.stripe import CardRail, PaymentIntent

router = APIRouter(tags=["Discovery"])
manifest_router = APIRouter(tags=["Payments"])

QUOTE_VALIDITY = timedelta(minutes=5)
CATALOG_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}


def api_catalog(request: Request, gate: PaymentGate) -> List[Dict[str, Any]]:
    """
    Priced description of every gated route on the application, read from the
    OpenAPI document so routes mounted through included routers are listed too
    """
    prefix = gate.config.management_prefix
    endpoints = []
    for path, operations in request.app.openapi().get("paths", {}).items():
        if gate.is_exempt(path) or path.startswith(prefix):
            continue
        for method in sorted(m.upper() for m in operations):
            if method not in CATALOG_METHODS:
                continue
            operation = operations[method.lower()]
            summary = operation.get("summary", "")
            name = summary.lower().replace(" ", "_") or operation.get("operationId", "")
            description = (operation.get("description") or summary).strip().split("\n")[0]
            params = [
                {
                    "name": param["name"],
                    "in": param["in"],
                    "type": "string",
                    "required": param.get("required", False),
                }
                for param in operation.get("parameters", [])
                if param.get("in") in ("path", "query")
            ]
            endpoints.append({
                "path": path,
                "method": method,
                "name": name,
                "description": description,
                "parameters": params,
                "cost": gate.pricing.price_for(method, path),
                "currency": gate.config.currency,
                "costUnit": "per_call",
            })
    return endpoints


def _json_schema(params: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {p["name"]: {"type": p["type"]} for p in params},
        "required": [p["name"] for p in params if p["required"]],
    }


def openai_functions(endpoints: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": ep["name"],
            "description": f"{ep['description']} (Cost: {ep['cost']} {ep['currency']} {ep['costUnit']})",
            "parameters": _json_schema(ep["parameters"]),
            "x-cost": {"amount": ep["cost"], "currency": ep["currency"], "unit": ep["costUnit"]},
        }
        for ep in endpoints
    ]


def mcp_tools(endpoints: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [
        {
            "name": ep["name"],
            "description": ep["description"],
            "inputSchema": _json_schema(ep["parameters"]),
            "cost": {"amount": ep["cost"], "currency": ep["currency"], "unit": ep["costUnit"]},
        }
        for ep in endpoints
    ]


@manifest_router.get("/x402.json", response_model=X402Manifest)
async def get_x402_manifest(gate: PaymentGate = Depends(get_gate)):
    """
    x402 protocol manifest
    Machine-readable summary of accepted schemes, networks and endpoints
    """
    config = gate.config
    prefix = config.management_prefix
    return X402Manifest(
        name="x402 PayGate",
        description="Pay-per-request API gated by HTTP 402",
        schemes=gate.registry.list_schemes(),
        networks=config.effective_networks,
        currency=config.currency,
        payTo=config.pay_to,
        pricePerRequest=config.price_per_request,
        endpoints={
            "discover": f"{prefix}/discover",
            "cost_estimate": f"{prefix}/cost-estimate",
            "payment_methods": f"{prefix}/payment-methods",
            "sessions": f"{prefix}/sessions",
            "budgets": f"{prefix}/budgets",
            "metrics": f"{prefix}/metrics",
        },
    )


@router.get("/discover")
async def discover(request: Request, format: str = "", gate: PaymentGate = Depends(get_gate)):
    """API description for agents: default, OpenAI functions or MCP tools"""
    config = gate.config
    prefix = config.management_prefix
    endpoints = api_catalog(request, gate)
    payment = {
        "protocol": "x402",
        "network": config.network,
        "currency": config.currency,
        "payTo": config.pay_to,
        "preAuthEndpoint": f"{prefix}/budgets",
        "sessionEndpoint": f"{prefix}/sessions",
    }

    if format == "openai":
        return {"functions": openai_functions(endpoints), "payment": payment}
    if format == "mcp":
        return {"tools": mcp_tools(endpoints), "paymentInfo": payment}
    return {
        "name": "x402 PayGate",
        "version": "1.0",
        "protocol": {
            "x402Version": 1,
            "preAuthSupported": gate.budgets is not None,
            "sessionsSupported": gate.sessions is not None,
            "idempotencySupported": gate.idempotency is not None,
        },
        "payment": {**payment, "asset": config.asset},
        "schemes": gate.registry.list_schemes(),
        "endpoints": endpoints,
        "schemas": {
            "openai": f"{prefix}/discover?format=openai",
            "mcp": f"{prefix}/discover?format=mcp",
        },
    }


@router.get("/payment-methods", response_model=List[PaymentMethodInfo])
async def list_payment_methods(gate: PaymentGate = Depends(get_gate)):
    return [PaymentMethodInfo(**v.describe()) for v in gate.registry.verifiers()]


@router.get("/cost-estimate", response_model=CostEstimate)
async def cost_estimate(endpoint: str, method: str = "GET", gate: PaymentGate = Depends(get_gate)):
    """Quote the price of a request before making it"""
    config = gate.config
    method = method.upper()
    cost = gate.pricing.price_for(method, endpoint)
    estimate = CostEstimate(
        endpoint=endpoint,
        method=method,
        estimatedCost=cost,
        currency=config.currency,
        validUntil=(utcnow() + QUOTE_VALIDITY).isoformat(),
    )
    if config.agent_batch_pricing:
        estimate.batchPricePerItem = calculate_batch_price(cost, config.agent_batch_discount)
        estimate.minBatchSize = config.agent_min_batch_size
    return estimate


def _card_rail(gate: PaymentGate) -> CardRail:
    rail = gate.registry.get(SCHEME_STRIPE)
    if not isinstance(rail, CardRail):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Card payments are not enabled")
    return rail


@router.post("/payment-intents", status_code=status.HTTP_201_CREATED, response_model=PaymentIntent)
async def create_payment_intent(body: PaymentIntentRequest, gate: PaymentGate = Depends(get_gate)):
    """Start a card payment for a resource at its current price"""
    rail = _card_rail(gate)
    amount = gate.pricing.price_for(body.method, body.resource)
    try:
        return await rail.create_payment_intent(
            amount=amount,
            resource=body.resource,
            customer_id=body.customer_id,
            metadata=body.metadata,
        )
    except CollaboratorError as e:
        logger.error("payment_intent_failed", resource=body.resource, error=str(e))
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Card processor unavailable")


@router.post("/webhooks/card")
async def card_webhook(request: Request, gate: PaymentGate = Depends(get_gate)):
    """Signed notifications from the card processor"""
    rail = _card_rail(gate)
    payload = await request.body()
    if not rail.verify_webhook_signature(payload, request.headers.get("stripe-signature", "")):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")
    try:
        event = await request.json()
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(event, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event")

    intent = (event.get("data") or {}).get("object") or {}
    logger.info("card_webhook_received", event_type=event.get("type", ""), intent_id=intent.get("id"))
    return {"received": True}
