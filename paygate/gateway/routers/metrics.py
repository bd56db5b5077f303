from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from paygate.gateway.dependencies import get_gate, require_admin
from paygate.gateway.gate import PaymentGate
from paygate.stores.models import EndpointStats, MetricsFilter, MetricsReport

router = APIRouter(prefix="/metrics", tags=["Metrics"], dependencies=[Depends(require_admin)])


def _metering(gate: PaymentGate):
    if gate.metering is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Metering is disabled")
    return gate.metering


@router.get("", response_model=MetricsReport)
async def get_metrics(
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    endpoint: str = "",
    payer: str = "",
    payment_type: str = "",
    ai_only: bool = False,
    gate: PaymentGate = Depends(get_gate),
):
    """Aggregated usage and revenue over the metering buffer"""
    return _metering(gate).query(
        MetricsFilter(
            start_time=start,
            end_time=end,
            endpoint=endpoint,
            payer_id=payer,
            payment_type=payment_type,
            ai_agents_only=ai_only,
        )
    )


@router.get("/endpoints", response_model=List[EndpointStats])
async def get_endpoint_stats(gate: PaymentGate = Depends(get_gate)):
    return _metering(gate).endpoint_stats()
