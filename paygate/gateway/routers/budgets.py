from datetime import timedelta
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request, status

from paygate.gateway.dependencies import get_gate, logger
from paygate.gateway.gate import PaymentGate
from paygate.gateway.models import BudgetCreateRequest, BudgetDeleteResponse, parse_duration
from paygate.payments.errors import PaymentGateError, StoreNotFound
from paygate.payments.models import utcnow
from paygate.stores.models import Budget

router = APIRouter(prefix="/budgets", tags=["Budgets"])


def _budgets(gate: PaymentGate):
    if gate.budgets is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Budgets are disabled")
    return gate.budgets


@router.post("", status_code=status.HTTP_201_CREATED, response_model=Budget)
async def create_budget(
    body: BudgetCreateRequest,
    request: Request,
    gate: PaymentGate = Depends(get_gate),
):
    """
    Deposit a pre-authorized budget. Requests carrying X-Agent-ID are then
    paid from it until it runs out or expires.
    """
    store = _budgets(gate)
    config = gate.config

    wallet = body.wallet_address
    if config.require_payment_for_grants:
        try:
            payment = await gate.verify_grant(body.payment_proof, body.budget, request.url.path)
        except PaymentGateError as e:
            logger.info("budget_payment_rejected", agent_id=body.agent_id, code=e.code, reason=e.message)
            return gate.payment_required("POST", request.url.path, body.budget)
        wallet = wallet or payment.payer

    ttl = parse_duration(body.expires_in) if body.expires_in else config.budget_default_ttl
    now = utcnow()
    return store.create(
        Budget(
            agent_id=body.agent_id,
            wallet_address=wallet,
            total=body.budget,
            currency=config.currency,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl),
            metadata=body.metadata,
        )
    )


@router.get("", response_model=List[Budget])
async def list_budgets(agent_id: str, gate: PaymentGate = Depends(get_gate)):
    """Budgets deposited for an agent"""
    return _budgets(gate).list_by_agent(agent_id)


@router.get("/{budget_id}", response_model=Budget)
async def get_budget(budget_id: str, gate: PaymentGate = Depends(get_gate)):
    budget = _budgets(gate).get(budget_id)
    if budget is None:
        raise StoreNotFound(f"Budget {budget_id} not found")
    return budget


@router.delete("/{budget_id}", response_model=BudgetDeleteResponse)
async def delete_budget(budget_id: str, gate: PaymentGate = Depends(get_gate)):
    """Close a budget; reports what remains to be refunded and what was spent"""
    budget = _budgets(gate).delete(budget_id)
    return BudgetDeleteResponse(refunded=budget.remaining, total_spent=budget.spent)
