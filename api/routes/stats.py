"""
ETL statistics and metrics endpoint
"""
from fastapi import APIRouter, Depends, Query, Request
from api.dependencies import get_service
from ingestion.service import ETLStateMachineService
from schemas.api import StatsResponse
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Statistics"])


@router.get("/stats", response_model=StatsResponse)
async def get_stats(
    request: Request,
    organization_id: str = Query(..., min_length=1),
    service: ETLStateMachineService = Depends(get_service)
):
    """
    Get processing statistics for one organization.

    Returns:
    - Files and runs per state
    - Open pending dimensions
    - Retry/DLQ figures and run lock counts
    """
    request_id = getattr(request.state, "request_id", None)
    logger.info(f"[{request_id}] GET /stats - org={organization_id}")

    stats = await service.get_processing_stats(organization_id)
    return StatsResponse(**stats, request_id=request_id)
