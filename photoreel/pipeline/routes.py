"""
FastAPI routes for orders.

  GET  /orders/{id}              : order status, jobs, queue position, progress
  POST /orders/sweep/pending     : fail stale processing orders now
  POST /orders/sweep/throttled   : admit queued orders into free slots now
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from .errors import OrderNotFoundError
from .models import OrderStatusResponse
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> JobOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Orchestrator not initialised")
    return orchestrator


order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.get("/{order_id}", response_model=OrderStatusResponse)
async def get_order_status(order_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.get_status(order_id)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Order not found")


@order_router.post("/sweep/pending")
async def sweep_pending(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        failed = await orchestrator.process_pending_orders()
    except Exception as e:
        logger.error(f"Pending sweep failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "failed": failed}


@order_router.post("/sweep/throttled")
async def sweep_throttled(orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        started = await orchestrator.process_throttled_orders()
    except Exception as e:
        logger.error(f"Throttled sweep failed: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail=str(e))
    return {"status": "ok", "started": started}
