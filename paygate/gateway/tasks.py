import asyncio
import structlog

from paygate.gateway.gate import PaymentGate

logger = structlog.get_logger()


def sweep_once(gate: PaymentGate) -> dict:
    """Drop expired sessions and idempotency records; one store failing does not block the other"""
    counts = {"sessions": 0, "idempotency_records": 0}

    if gate.sessions is not None:
        try:
            counts["sessions"] = gate.sessions.sweep_expired()
            if counts["sessions"] > 0:
                logger.info("expired_sessions_swept", count=counts["sessions"])
        except Exception as e:
            logger.error("session_sweep_error", error=str(e))

    if gate.idempotency is not None:
        try:
            counts["idempotency_records"] = gate.idempotency.purge_expired()
            if counts["idempotency_records"] > 0:
                logger.info("idempotency_records_purged", count=counts["idempotency_records"])
        except Exception as e:
            logger.error("idempotency_purge_error", error=str(e))

    return counts


async def run_maintenance_tasks(gate: PaymentGate, interval: int = 60):
    """Background task sweeping expired state every `interval` seconds"""
    while True:
        try:
            await asyncio.sleep(interval)
            sweep_once(gate)
        except asyncio.CancelledError:
            logger.info("maintenance_tasks_stopped")
            raise
        except Exception as e:
            logger.error("maintenance_task_error", error=str(e))
