"""
Health check endpoint with storage and run status
"""

from fastapi import APIRouter, Depends, Request
from api.dependencies import get_service
from core.exceptions import ETLException
from ingestion.service import ETLStateMachineService
from ingestion.state_machine import PROCESSING_STATES
from ingestion.storage.base import Condition, Tables
from schemas.api import HealthCheckResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(request: Request, service: ETLStateMachineService = Depends(get_service)):
    """
    Health check endpoint.

    Returns:
    - Storage connectivity status
    - Runs currently in a processing state and how many look stale
    - Unresolved dead-letter entries
    - Scheduler status
    """
    request_id = getattr(request.state, "request_id", None)
    store = service.store

    db_connected = False
    runs_in_progress = 0
    stale_runs = 0
    dlq_size = 0

    try:
        runs_in_progress = await store.count(
            Tables.ETL_RUN, [Condition("current_state", "in", [s.value for s in PROCESSING_STATES])]
        )
        db_connected = True
        stale_runs = len(await service.state_machine.find_stale_runs(store))
        dlq_size = await store.count(Tables.DEAD_LETTER, [Condition("resolved", "eq", False)])
    except (ETLException, OSError) as e:
        logger.error(f"[{request_id}] Health check storage probe failed: {e}")

    scheduler = getattr(request.app.state, "scheduler", None)

    return HealthCheckResponse(
        database_connected=db_connected,
        scheduler_running=bool(scheduler and scheduler.scheduler.running),
        runs_in_progress=runs_in_progress,
        stale_runs=stale_runs,
        dlq_size=dlq_size,
        request_id=request_id,
    )
