"""
Integration tests for the payment gate
Tests exemptions, proofs, sessions, budgets, idempotency, agents and metering
"""

import json
import time
import base64
import pytest
from unittest.mock import AsyncMock

from paygate.gateway.responses import PAYMENT_REQUIRED_MESSAGE
from paygate.gateway.server import create_app
from paygate.payments.codec import ProofSource, encode_proof
from paygate.payments.errors import ProofMissing, SchemeUnsupported, VerificationFailed
from paygate.payments.models import PaymentProof
from paygate.payments.networks import SOLANA_DEVNET
from paygate.stores import (
    InMemoryBudgetStore,
    InMemoryIdempotencyStore,
    InMemoryMeteringStore,
    InMemorySessionStore,
)
from paygate.stores.models import SessionKind
from tests.conftest import make_request
from tests.factories import (
    PAY_TO,
    PAYER,
    BudgetFactory,
    GatewayConfigFactory,
    PaymentProofFactory,
    SessionFactory,
    authorization,
)


def x_payment(proof: PaymentProof) -> dict:
    return {"X-PAYMENT": encode_proof(proof)}


class TestExemptPaths:
    """Test requests that never reach payment checks"""

    def test_health_is_exempt(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert "x-payment-verified" not in response.headers

    def test_manifest_is_exempt(self, client):
        assert client.get("/x402.json").status_code == 200

    def test_management_prefix_is_exempt(self, gate):
        assert gate.is_exempt("/x402/sessions/pricing")
        assert gate.is_exempt("/health")
        assert not gate.is_exempt("/api/data")


class TestPaymentRequired:
    """Test the 402 challenge"""

    def test_missing_proof_returns_402(self, client):
        response = client.get("/api/data")

        assert response.status_code == 402
        body = response.json()
        assert body["x402Version"] == 1
        assert body["error"] == PAYMENT_REQUIRED_MESSAGE
        assert len(body["accepts"]) == 1

        offer = body["accepts"][0]
        assert offer["scheme"] == "exact"
        assert offer["network"] == "eip155:84532"
        assert offer["maxAmountRequired"] == "1000"
        assert offer["payTo"] == PAY_TO
        assert offer["resource"] == "/api/data"
        assert offer["maxTimeoutSeconds"] == 60

    def test_header_mirrors_body(self, client):
        response = client.get("/api/data")

        decoded = json.loads(base64.b64decode(response.headers["payment-required"]))
        assert decoded == response.json()
        assert "PAYMENT-REQUIRED" in response.headers["access-control-expose-headers"]

    def test_endpoint_price_in_offer(self, client):
        response = client.get("/api/premium")

        assert response.status_code == 402
        assert response.json()["accepts"][0]["maxAmountRequired"] == "5000"

    def test_multiple_networks_produce_multiple_offers(self, make_app):
        from fastapi.testclient import TestClient

        app = make_app(accepted_networks=["eip155:84532", "eip155:8453", SOLANA_DEVNET])
        response = TestClient(app).get("/api/data")

        networks = [offer["network"] for offer in response.json()["accepts"]]
        assert networks == ["eip155:84532", "eip155:8453", SOLANA_DEVNET]

    def test_failures_share_one_body(self, client):
        missing = client.get("/api/data")
        invalid = client.get("/api/data", headers={"Authorization": "Bearer nope"})
        malformed = client.get("/api/data", headers={"X-PAYMENT": "not-base64!!"})

        assert invalid.status_code == malformed.status_code == 402
        assert invalid.json() == missing.json() == malformed.json()


class TestTokenProofs:
    """Test opaque tokens from the token-carrying sources"""

    def test_bearer_token(self, client):
        response = client.get("/api/data", headers={"Authorization": "Bearer valid_abc"})

        assert response.status_code == 200
        assert response.headers["x-payment-verified"] == "true"
        assert response.headers["x-payment-scheme"] == "token"
        assert response.headers["x-payment-rail"] == "token"
        assert "x-payment-network" not in response.headers
        assert response.json()["scheme"] == "token"
        assert response.json()["source"] == "proof"

    def test_x402_authorization_method(self, client):
        response = client.get("/api/data", headers={"Authorization": "X402 valid_abc"})
        assert response.status_code == 200

    def test_unaccepted_authorization_method(self, client):
        response = client.get("/api/data", headers={"Authorization": "Basic valid_abc"})
        assert response.status_code == 402

    def test_token_header(self, client):
        response = client.get("/api/data", headers={"X-Payment-Token": "valid_tok"})
        assert response.status_code == 200

    def test_query_parameter(self, client):
        response = client.get("/api/data?payment_token=valid_tok")
        assert response.status_code == 200

    def test_bare_prefix_is_rejected(self, client):
        response = client.get("/api/data", headers={"X-Payment-Token": "valid_"})
        assert response.status_code == 402


class TestExactScheme:
    """Test facilitator-backed proofs"""

    def test_valid_proof_is_verified_and_settled(self, client):
        proof = PaymentProofFactory(nonce="0xabc")
        response = client.get("/api/data", headers=x_payment(proof))

        assert response.status_code == 200
        assert response.headers["x-payment-scheme"] == "exact"
        assert response.headers["x-payment-network"] == "eip155:84532"
        assert response.headers["x-payment-rail"] == "crypto"
        assert response.headers["x-payment-id"] == "0xabc"
        assert response.json()["payer"] == PAYER

    def test_payment_signature_header(self, client):
        proof = PaymentProofFactory()
        response = client.get("/api/data", headers={"PAYMENT-SIGNATURE": encode_proof(proof)})
        assert response.status_code == 200

    def test_raw_json_proof(self, client):
        proof = PaymentProofFactory()
        response = client.get("/api/data", headers={"X-PAYMENT": json.dumps(proof.to_wire())})
        assert response.status_code == 200

    def test_facilitator_rejection(self, client):
        proof = PaymentProofFactory(payload={"signature": "0xbad", "authorization": authorization()})
        response = client.get("/api/data", headers=x_payment(proof))
        assert response.status_code == 402

    def test_expired_proof(self, client):
        proof = PaymentProofFactory(timestamp=int(time.time()) - 600)
        response = client.get("/api/data", headers=x_payment(proof))
        assert response.status_code == 402

    def test_amount_below_price(self, client):
        proof = PaymentProofFactory(
            payload={"signature": "0xvalid", "authorization": authorization(value="1000")}
        )
        response = client.get("/api/premium", headers=x_payment(proof))
        assert response.status_code == 402

    def test_wrong_recipient(self, client):
        proof = PaymentProofFactory(
            payload={"signature": "0xvalid", "authorization": authorization(to="0xsomeoneelse")}
        )
        response = client.get("/api/data", headers=x_payment(proof))
        assert response.status_code == 402

    def test_non_string_recipient(self, client):
        proof = PaymentProofFactory(
            payload={"signature": "0xvalid", "authorization": authorization(to=12345)}
        )
        response = client.get("/api/data", headers=x_payment(proof))

        assert response.status_code == 402
        assert response.json()["error"] == PAYMENT_REQUIRED_MESSAGE

    @pytest.mark.asyncio
    async def test_unexpected_verifier_error_is_verification_failure(self, gate, monkeypatch):
        verifier = gate.registry.resolve("exact")
        monkeypatch.setattr(verifier, "verify", AsyncMock(side_effect=RuntimeError("boom")))

        with pytest.raises(VerificationFailed):
            await gate.verify_proof(PaymentProofFactory(), "GET", "/api/data", 1000)

    def test_network_not_offered(self, client):
        proof = PaymentProofFactory(network=SOLANA_DEVNET)
        response = client.get("/api/data", headers=x_payment(proof))
        assert response.status_code == 402

    def test_unknown_scheme(self, client):
        proof = PaymentProofFactory(scheme="upto")
        response = client.get("/api/data", headers=x_payment(proof))
        assert response.status_code == 402

    @pytest.mark.asyncio
    async def test_verify_proof_direct(self, gate):
        payment = await gate.verify_proof(PaymentProofFactory(), "GET", "/api/data", 1000)

        assert payment.scheme == "exact"
        assert payment.amount == 1000
        assert payment.transaction_id == "0xsettled"

    @pytest.mark.asyncio
    async def test_verify_proof_rejects_network_not_offered(self, gate):
        with pytest.raises(SchemeUnsupported):
            await gate.verify_proof(PaymentProof(scheme="exact", network="eip155:1"), "GET", "/api/data", 1000)

    @pytest.mark.asyncio
    async def test_verify_proof_rejects_invalid_token(self, gate):
        with pytest.raises(VerificationFailed):
            await gate.verify_proof(PaymentProof(scheme="token", payload="bogus"), "GET", "/api/data", 1000)

    @pytest.mark.asyncio
    async def test_verify_grant_requires_proof(self, gate):
        with pytest.raises(ProofMissing):
            await gate.verify_grant("", 1000, "/x402/sessions")


class TestProofExtraction:
    """Test header precedence"""

    def test_payment_signature_wins(self, gate):
        request = make_request({"PAYMENT-SIGNATURE": "sig", "X-PAYMENT": "xp", "Authorization": "Bearer t"})
        assert gate.extract_proof(request) == ("sig", ProofSource.PAYMENT_SIGNATURE)

    def test_x_payment_before_authorization(self, gate):
        request = make_request({"X-PAYMENT": "xp", "Authorization": "Bearer t"})
        assert gate.extract_proof(request) == ("xp", ProofSource.X_PAYMENT)

    def test_authorization_method_is_case_insensitive(self, gate):
        request = make_request({"Authorization": "bearer tok", "X-Payment-Token": "other"})
        assert gate.extract_proof(request) == ("tok", ProofSource.AUTHORIZATION)

    def test_unaccepted_method_falls_through(self, gate):
        request = make_request({"Authorization": "Basic abc", "X-Payment-Token": "tok"})
        assert gate.extract_proof(request) == ("tok", ProofSource.TOKEN_HEADER)

    def test_query_before_card_intent(self, gate):
        request = make_request({"X-Stripe-Payment-Intent": "pi_1"}, query="payment_token=q")
        assert gate.extract_proof(request) == ("q", ProofSource.QUERY)

    def test_card_intent(self, gate):
        request = make_request({"X-Stripe-Payment-Intent": "pi_1"})
        assert gate.extract_proof(request) == ("pi_1", ProofSource.CARD_INTENT)

    def test_nothing_presented(self, gate):
        assert gate.extract_proof(make_request({"Authorization": "Bearer "})) is None


class TestSessions:
    """Test requests paid by a session"""

    def test_request_limited_session(self, client, gate):
        session = gate.sessions.create(SessionFactory(kind=SessionKind.REQUESTS, max_requests=2))
        headers = {"X-Session-ID": session.id}

        first = client.get("/api/data", headers=headers)
        second = client.get("/api/data", headers=headers)
        third = client.get("/api/data", headers=headers)

        assert first.status_code == 200
        assert first.headers["x-session-remaining"] == "1"
        assert first.json()["source"] == "session"
        assert second.status_code == 200
        assert second.headers["x-session-remaining"] == "0"
        assert third.status_code == 401
        assert third.json()["message"] == "session request limit exceeded"

    def test_time_session_has_no_remaining_header(self, client, gate):
        session = gate.sessions.create(SessionFactory())
        response = client.get("/api/data", headers={"X-Session-ID": session.id})

        assert response.status_code == 200
        assert "x-session-remaining" not in response.headers
        assert "x-session-expires" in response.headers

    def test_unknown_session(self, client):
        response = client.get("/api/data", headers={"X-Session-ID": "sess_missing"})

        assert response.status_code == 401
        assert response.json()["error"] == "invalid_session"

    def test_endpoint_not_allowed(self, client, gate):
        session = gate.sessions.create(SessionFactory(allowed_endpoints=["/api/premium"]))
        response = client.get("/api/data", headers={"X-Session-ID": session.id})

        assert response.status_code == 401
        assert response.json()["message"] == "endpoint not allowed for this session"

    def test_sessions_disabled(self, make_app):
        from fastapi.testclient import TestClient

        app = make_app(sessions_enabled=False)
        response = TestClient(app).get("/api/data", headers={"X-Session-ID": "sess_any"})
        assert response.status_code == 402


class TestBudgets:
    """Test requests paid from pre-authorized budgets"""

    def test_deduction(self, client, gate):
        budget = gate.budgets.create(BudgetFactory(agent_id="agent-1", total=2500))
        response = client.get("/api/data", headers={"X-Agent-ID": "agent-1"})

        assert response.status_code == 200
        assert response.headers["x-budget-remaining"] == "1500"
        assert response.headers["x-budget-deducted"] == "1000"
        assert response.json()["source"] == "budget"
        assert gate.budgets.get(budget.id).spent == 1000

    def test_insufficient_budget(self, client, gate):
        budget = gate.budgets.create(BudgetFactory(agent_id="agent-2", total=1500))
        response = client.get("/api/premium", headers={"X-Agent-ID": "agent-2"})

        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "INSUFFICIENT_BUDGET"
        assert body["required"] == 5000
        assert body["available"] == 1500
        assert body["budgetId"] == budget.id
        assert body["retryStrategy"]["shouldRetry"] is False
        assert gate.budgets.get(budget.id).remaining == 1500

    def test_unknown_agent_falls_back_to_proof(self, client):
        response = client.get(
            "/api/data",
            headers={"X-Agent-ID": "nobody", "Authorization": "Bearer valid_x"},
        )
        assert response.status_code == 200
        assert response.headers["x-payment-scheme"] == "token"

    def test_refund_on_server_error(self, client, gate):
        budget = gate.budgets.create(BudgetFactory(agent_id="agent-3", total=5000))
        response = client.get("/api/fail", headers={"X-Agent-ID": "agent-3"})

        assert response.status_code == 500
        refunded = gate.budgets.get(budget.id)
        assert refunded.remaining == 5000
        assert refunded.spent == 0
        assert gate.metering.records()[-1].amount_paid == 0


class TestIdempotency:
    """Test replay of completed responses"""

    def test_replay_skips_handler_and_payment(self, client, app):
        headers = {"Idempotency-Key": "order-1", "Authorization": "Bearer valid_x"}
        first = client.post("/api/orders", headers=headers)
        replay = client.post("/api/orders", headers={"Idempotency-Key": "order-1"})

        assert first.status_code == replay.status_code == 200
        assert replay.json() == first.json() == {"order": 1}
        assert replay.headers["x-payment-verified"] == "true"
        assert app.state.order_count == 1

    def test_replay_is_byte_identical(self, client, gate):
        headers = {"Idempotency-Key": "order-2", "Authorization": "Bearer valid_x"}
        first = client.post("/api/orders", headers=headers)
        replay = client.post("/api/orders", headers={"Idempotency-Key": "order-2"})

        assert len(gate.idempotency) == 1
        assert replay.status_code == first.status_code
        assert replay.headers.multi_items() == first.headers.multi_items()
        assert replay.content == first.content

    def test_conflicting_reuse(self, client):
        client.post("/api/orders", headers={"Idempotency-Key": "k", "Authorization": "Bearer valid_x"})
        response = client.get("/api/data", headers={"Idempotency-Key": "k"})

        assert response.status_code == 409
        assert response.json()["error"] == "IDEMPOTENCY_CONFLICT"

    def test_rejections_are_not_cached(self, client, app):
        rejected = client.post("/api/orders", headers={"Idempotency-Key": "k2"})
        paid = client.post("/api/orders", headers={"Idempotency-Key": "k2", "Authorization": "Bearer valid_x"})

        assert rejected.status_code == 402
        assert paid.status_code == 200
        assert app.state.order_count == 1

    def test_server_errors_are_not_cached(self, client, gate):
        gate.budgets.create(BudgetFactory(agent_id="agent-9", total=5000))
        client.get("/api/fail", headers={"Idempotency-Key": "k3", "X-Agent-ID": "agent-9"})

        assert gate.idempotency.get("k3") is None


class TestAgents:
    """Test agent-facing behavior"""

    AGENT = {"User-Agent": "langchain-python/0.1"}

    def test_retry_hints_on_rejection(self, client):
        response = client.get("/api/data", headers=self.AGENT)

        assert response.status_code == 402
        assert response.headers["retry-after"] == "5"
        assert response.headers["x-recommended-retry"] == "5"
        assert response.headers["x-estimated-cost"] == "1000"
        assert response.headers["x-currency"] == "USD"

    def test_declared_budget_too_low(self, client):
        response = client.get("/api/data", headers={**self.AGENT, "X-Agent-Budget": "500"})

        assert response.status_code == 402
        assert response.headers["x-budget-exceeded"] == "true"
        body = response.json()
        assert body["code"] == "INSUFFICIENT_BUDGET"
        assert body["required"] == 1000
        assert body["available"] == 500

    def test_zero_declared_budget_is_ignored(self, client):
        headers = {**self.AGENT, "X-Agent-Budget": "0", "Authorization": "Bearer valid_x"}
        response = client.get("/api/data", headers=headers)

        assert response.status_code == 200
        assert "x-budget-exceeded" not in response.headers

    def test_batch_discount(self, client):
        headers = {**self.AGENT, "X-Agent-Batch-Size": "10", "Authorization": "Bearer valid_x"}
        response = client.get("/api/data", headers=headers)

        assert response.status_code == 200
        assert response.headers["x-batch-price-per-item"] == "900"
        assert response.headers["x-actual-cost"] == "1000"

    def test_batch_hint_keeps_list_price_in_offers(self, client):
        headers = {**self.AGENT, "X-Agent-Batch-Size": "100"}
        response = client.get("/api/data", headers=headers)

        assert response.status_code == 402
        assert response.headers["x-batch-price-per-item"] == "900"
        assert {o["maxAmountRequired"] for o in response.json()["accepts"]} == {"1000"}

    def test_small_batch_pays_full_price(self, client):
        headers = {**self.AGENT, "X-Agent-Batch-Size": "2", "Authorization": "Bearer valid_x"}
        response = client.get("/api/data", headers=headers)

        assert "x-batch-price-per-item" not in response.headers
        assert response.headers["x-actual-cost"] == "1000"

    def test_browser_gets_no_agent_headers(self, client):
        response = client.get("/api/data", headers={"User-Agent": "Mozilla/5.0"})

        assert "retry-after" not in response.headers
        assert "x-estimated-cost" not in response.headers


class TestMetering:
    """Test what the gate records"""

    def test_rejection_and_payment_recorded(self, client, gate):
        client.get("/api/data")
        client.get("/api/data", headers={"Authorization": "Bearer valid_x"})

        rejected, paid = gate.metering.records()
        assert rejected.response_code == 402
        assert rejected.payment_type == "none"
        assert rejected.amount_paid == 0
        assert paid.response_code == 200
        assert paid.payment_type == "per-request"
        assert paid.amount_paid == 1000

    def test_replay_recorded_without_charge(self, client, gate):
        headers = {"Idempotency-Key": "m1", "Authorization": "Bearer valid_x"}
        client.post("/api/orders", headers=headers)
        client.post("/api/orders", headers=headers)

        replay = gate.metering.records()[-1]
        assert replay.payment_type == "replay"
        assert replay.amount_paid == 0

    def test_session_request_recorded(self, client, gate):
        session = gate.sessions.create(SessionFactory())
        client.get("/api/data", headers={"X-Session-ID": session.id})

        metric = gate.metering.records()[-1]
        assert metric.payment_type == "session"
        assert metric.session_id == session.id
        assert metric.payer_id == PAYER

    def test_agent_flagged(self, client, gate):
        client.get("/api/data", headers={"User-Agent": "openai-agents/1.0"})
        assert gate.metering.records()[-1].is_ai_agent is True

    def test_exempt_not_recorded(self, client, gate):
        client.get("/health")
        assert len(gate.metering) == 0


class TestAppWiring:
    """Test store injection through the app factory"""

    def test_injected_empty_stores_are_used(self, registry):
        stores = {
            "session_store": InMemorySessionStore(),
            "budget_store": InMemoryBudgetStore(),
            "metering_store": InMemoryMeteringStore(),
            "idempotency_store": InMemoryIdempotencyStore(),
        }
        gate = create_app(GatewayConfigFactory(), registry=registry, **stores).state.gate

        assert gate.sessions is stores["session_store"]
        assert gate.budgets is stores["budget_store"]
        assert gate.metering is stores["metering_store"]
        assert gate.idempotency is stores["idempotency_store"]
