"""
Run lifecycle endpoints: inspect, process, approve, cancel
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.dependencies import get_runner, get_service
from ingestion.runner import ETLRunner
from ingestion.service import ETLStateMachineService
from schemas.api import ApproveRunRequest, CancelRunRequest, RunProcessResponse, TransitionResponse
from schemas.etl import ETLRunRecord
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/runs", tags=["Runs"])


@router.get("/{run_id}", response_model=ETLRunRecord)
async def get_run(run_id: str, service: ETLStateMachineService = Depends(get_service)):
    return ETLRunRecord(**await service.get_run(run_id))


@router.post("/{run_id}/process", response_model=RunProcessResponse)
async def process_run(run_id: str, request: Request, runner: ETLRunner = Depends(get_runner)):
    """
    Process a run now.

    Picks the run up where it stands: UPLOADED starts at parsing, APPROVED
    continues with the load and FAILED re-enters the stage that failed.
    A failure is answered with 200 and the retry decision; a run already
    held by another worker is reported the same way.
    """
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] POST /runs/{run_id}/process")

    result = await runner.process_run(run_id)
    return RunProcessResponse.from_retry_result(result, await runner.service.get_run(run_id))


@router.post("/{run_id}/approve", response_model=TransitionResponse)
async def approve_run(
    run_id: str,
    payload: ApproveRunRequest,
    service: ETLStateMachineService = Depends(get_service)
):
    transition = await service.approve_run(run_id, payload.approved_by, payload.notes)
    return TransitionResponse(transition=transition, run=ETLRunRecord(**await service.get_run(run_id)))


@router.post("/{run_id}/cancel", response_model=TransitionResponse)
async def cancel_run(
    run_id: str,
    payload: Optional[CancelRunRequest] = None,
    service: ETLStateMachineService = Depends(get_service)
):
    payload = payload or CancelRunRequest()
    transition = await service.cancel_run(run_id, payload.cancelled_by, payload.reason)
    return TransitionResponse(transition=transition, run=ETLRunRecord(**await service.get_run(run_id)))
