"""
Integration tests for the management API
Tests sessions, budgets, metrics and discovery endpoints
"""

import pytest
from fastapi import APIRouter
from fastapi.testclient import TestClient

from paygate.gateway.models import parse_duration
from paygate.gateway.server import create_app
from tests.factories import PAY_TO, GatewayConfigFactory


class TestParseDuration:
    """Test duration strings"""

    @pytest.mark.parametrize("value,seconds", [
        ("90s", 90),
        ("30m", 1800),
        ("1h30m", 5400),
        ("7d", 604800),
        ("3600", 3600),
    ])
    def test_valid(self, value, seconds):
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["", "abc", "1x", "h1", "0", "1h junk"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            parse_duration(value)


class TestSessionRoutes:
    """Test buying and managing sessions"""

    def test_pricing(self, client):
        response = client.get("/x402/sessions/pricing")

        assert response.status_code == 200
        tiers = {t["name"]: t for t in response.json()["tiers"]}
        assert tiers["hourly"]["price"] == 100000
        assert tiers["daily"]["price"] == 2400000
        assert tiers["100-requests"]["price"] == 100000
        assert tiers["100-requests"]["max_requests"] == 100

    def test_buy_request_session_and_use_it(self, client):
        response = client.post("/x402/sessions", json={
            "payment_proof": "valid_session",
            "payer_address": "0xbuyer",
            "session_type": "requests",
            "max_requests": 3,
        })

        assert response.status_code == 201
        body = response.json()
        assert body["price"] == 3000
        assert body["remaining_requests"] == 3
        assert body["session_id"].startswith("sess_")

        paid = client.get("/api/data", headers={"X-Session-ID": body["session_id"]})
        assert paid.status_code == 200
        assert paid.headers["x-session-remaining"] == "2"

    def test_buy_time_session(self, client, gate):
        response = client.post("/x402/sessions", json={"payment_proof": "valid_s", "duration": "30m"})

        assert response.status_code == 201
        assert response.json()["price"] == 50000
        session = gate.sessions.get(response.json()["session_id"])
        assert session.amount_paid == 50000

    def test_buy_without_proof(self, client):
        response = client.post("/x402/sessions", json={"duration": "1h"})

        assert response.status_code == 402
        assert response.json()["accepts"][0]["maxAmountRequired"] == "100000"

    def test_buy_with_invalid_proof(self, client):
        response = client.post("/x402/sessions", json={"payment_proof": "nope"})
        assert response.status_code == 402

    def test_invalid_duration(self, client):
        response = client.post("/x402/sessions", json={"payment_proof": "valid_s", "duration": "soon"})
        assert response.status_code == 422

    def test_grant_without_payment_when_disabled(self, make_app):
        client = TestClient(make_app(require_payment_for_grants=False))
        response = client.post("/x402/sessions", json={"payer_address": "0xfree"})
        assert response.status_code == 201

    def test_get_list_and_delete(self, client):
        created = client.post("/x402/sessions", json={"payment_proof": "valid_s", "payer_address": "0xAbC"})
        session_id = created.json()["session_id"]

        fetched = client.get(f"/x402/sessions/{session_id}")
        assert fetched.status_code == 200
        assert fetched.json()["payer_address"] == "0xAbC"

        listed = client.get("/x402/sessions", params={"payer": "0xabc"})
        assert [s["id"] for s in listed.json()] == [session_id]

        assert client.delete(f"/x402/sessions/{session_id}").status_code == 204
        missing = client.get(f"/x402/sessions/{session_id}")
        assert missing.status_code == 404
        assert missing.json()["error"] == "NOT_FOUND"

    def test_sessions_disabled(self, make_app):
        client = TestClient(make_app(sessions_enabled=False))
        assert client.get("/x402/sessions/sess_1").status_code == 404


class TestBudgetRoutes:
    """Test pre-authorized budgets"""

    def test_create_use_and_close(self, client):
        created = client.post("/x402/budgets", json={
            "agent_id": "agent-7",
            "budget": 10000,
            "payment_proof": "valid_deposit",
            "expires_in": "24h",
        })

        assert created.status_code == 201
        budget = created.json()
        assert budget["remaining"] == 10000
        assert budget["agent_id"] == "agent-7"

        paid = client.get("/api/data", headers={"X-Agent-ID": "agent-7"})
        assert paid.status_code == 200
        assert paid.headers["x-budget-remaining"] == "9000"

        fetched = client.get(f"/x402/budgets/{budget['id']}").json()
        assert fetched["spent"] == 1000
        assert fetched["request_count"] == 1

        listed = client.get("/x402/budgets", params={"agent_id": "agent-7"}).json()
        assert [b["id"] for b in listed] == [budget["id"]]

        closed = client.delete(f"/x402/budgets/{budget['id']}")
        assert closed.json() == {"deleted": True, "refunded": 9000, "total_spent": 1000}

    def test_create_without_proof(self, client):
        response = client.post("/x402/budgets", json={"agent_id": "agent-8", "budget": 5000})

        assert response.status_code == 402
        assert response.json()["accepts"][0]["maxAmountRequired"] == "5000"

    @pytest.mark.parametrize("body", [
        {"agent_id": "a", "budget": 0, "payment_proof": "valid_x"},
        {"agent_id": "", "budget": 10, "payment_proof": "valid_x"},
        {"agent_id": "a", "budget": 10, "payment_proof": "valid_x", "expires_in": "later"},
    ])
    def test_invalid_body(self, client, body):
        assert client.post("/x402/budgets", json=body).status_code == 422

    def test_unknown_budget(self, client):
        assert client.get("/x402/budgets/budget_missing").status_code == 404
        assert client.delete("/x402/budgets/budget_missing").status_code == 404


class TestMetricsRoutes:
    """Test usage reporting"""

    def test_report(self, client):
        client.get("/api/data")
        client.get("/api/data", headers={"Authorization": "Bearer valid_x"})

        report = client.get("/x402/metrics").json()

        assert report["total_requests"] == 2
        assert report["total_revenue"] == 1000
        assert report["currency"] == "USDC"
        assert report["error_rate"] == 0.5
        assert report["top_endpoints"][0]["endpoint"] == "/api/data"

    def test_filtered_report(self, client):
        client.get("/api/data")
        client.get("/api/premium")

        report = client.get("/x402/metrics", params={"endpoint": "/api/premium"}).json()
        assert report["total_requests"] == 1

    def test_endpoint_stats(self, client):
        client.get("/api/data", headers={"Authorization": "Bearer valid_x"})

        stats = client.get("/x402/metrics/endpoints").json()
        assert stats[0]["endpoint"] == "/api/data"
        assert stats[0]["total_revenue"] == 1000

    def test_admin_key_required(self, make_app):
        client = TestClient(make_app(admin_api_key="secret"))

        assert client.get("/x402/metrics").status_code == 401
        assert client.get("/x402/metrics", headers={"X-Admin-Key": "wrong"}).status_code == 401
        assert client.get("/x402/metrics", headers={"X-Admin-Key": "secret"}).status_code == 200


class TestDiscoveryRoutes:
    """Test discovery documents for clients and agents"""

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["schemes"] == ["exact", "token"]

    def test_manifest(self, client):
        manifest = client.get("/x402.json").json()

        assert manifest["x402Version"] == 1
        assert manifest["schemes"] == ["exact", "token"]
        assert manifest["payTo"] == PAY_TO
        assert manifest["endpoints"]["budgets"] == "/x402/budgets"

    def test_discover_lists_priced_routes(self, client):
        body = client.get("/x402/discover").json()

        costs = {(e["method"], e["path"]): e["cost"] for e in body["endpoints"]}
        assert costs[("GET", "/api/data")] == 1000
        assert costs[("GET", "/api/premium")] == 5000
        assert not any(path.startswith("/x402") for _, path in costs)
        assert ("GET", "/health") not in costs
        assert body["protocol"]["sessionsSupported"] is True

        data = next(e for e in body["endpoints"] if e["path"] == "/api/data")
        assert data["description"] == "Sample data behind the gate"
        assert {"name": "limit", "in": "query", "type": "string", "required": False} in data["parameters"]

    def test_discover_walks_nested_routers(self, registry):
        reports = APIRouter(prefix="/reports")

        @reports.get("/{report_id}")
        async def get_report(report_id: str):
            """Single report"""
            return {"id": report_id}

        outer = APIRouter(prefix="/api")
        outer.include_router(reports)
        client = TestClient(create_app(GatewayConfigFactory(), registry=registry, routers=[outer]))

        body = client.get("/x402/discover").json()

        report = next(e for e in body["endpoints"] if e["path"] == "/api/reports/{report_id}")
        assert report["name"] == "get_report"
        assert report["cost"] == 1000
        assert {"name": "report_id", "in": "path", "type": "string", "required": True} in report["parameters"]

    def test_discover_openai(self, client):
        body = client.get("/x402/discover", params={"format": "openai"}).json()

        names = [f["name"] for f in body["functions"]]
        assert "get_data" in names
        assert body["payment"]["payTo"] == PAY_TO

    def test_discover_mcp(self, client):
        body = client.get("/x402/discover", params={"format": "mcp"}).json()

        tool = next(t for t in body["tools"] if t["name"] == "get_premium")
        assert tool["cost"]["amount"] == 5000
        assert tool["inputSchema"]["type"] == "object"

    def test_payment_methods(self, client):
        methods = client.get("/x402/payment-methods").json()

        assert [m["id"] for m in methods] == ["exact", "token"]
        assert methods[0]["type"] == "crypto"

    def test_cost_estimate(self, client):
        estimate = client.get("/x402/cost-estimate", params={"endpoint": "/api/premium"}).json()

        assert estimate["estimatedCost"] == 5000
        assert estimate["currency"] == "USD"
        assert estimate["batchPricePerItem"] == 4500
        assert estimate["minBatchSize"] == 5

    def test_card_endpoints_disabled(self, client):
        assert client.post("/x402/payment-intents", json={"resource": "/api/data"}).status_code == 404
        assert client.post("/x402/webhooks/card", content=b"{}").status_code == 404
