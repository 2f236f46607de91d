"""
Pending dimension endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_dimension_lookup, get_service
from core.exceptions import EntityNotFoundError
from ingestion.loaders.dimensions import DimensionLookupService
from ingestion.service import ETLStateMachineService
from ingestion.storage.base import Tables
from models.base import DimensionType
from schemas.api import PendingDimensionListResponse, RejectPendingRequest, ResolvePendingRequest
from schemas.etl import PendingDimensionRecord

router = APIRouter(prefix="/dimensions", tags=["Dimensions"])


@router.get("/pending", response_model=PendingDimensionListResponse)
async def list_pending(
    organization_id: str = Query(..., min_length=1),
    dimension: Optional[DimensionType] = Query(None),
    lookup: DimensionLookupService = Depends(get_dimension_lookup)
):
    entries = await lookup.get_pending_entries(organization_id, dimension)
    return PendingDimensionListResponse(
        organization_id=organization_id,
        total=len(entries),
        entries=[PendingDimensionRecord(**entry) for entry in entries],
    )


@router.post("/pending/{pending_id}/resolve", response_model=PendingDimensionRecord)
async def resolve_pending(
    pending_id: str,
    payload: Optional[ResolvePendingRequest] = None,
    service: ETLStateMachineService = Depends(get_service),
    lookup: DimensionLookupService = Depends(get_dimension_lookup)
):
    """
    Resolve a placeholder to an existing dimension row, or register its code
    as a new one when no resolved_id is given.
    """
    payload = payload or ResolvePendingRequest()
    entry = await service.store.get(Tables.PENDING_DIMENSION, pending_id)
    if entry is None:
        raise EntityNotFoundError("pending_dimension", pending_id)

    resolved = await lookup.resolve_pending_entry(
        entry["type"], pending_id, payload.resolved_id, payload.resolved_by
    )
    return PendingDimensionRecord(**resolved)


@router.post("/pending/{pending_id}/reject", response_model=PendingDimensionRecord)
async def reject_pending(
    pending_id: str,
    payload: Optional[RejectPendingRequest] = None,
    lookup: DimensionLookupService = Depends(get_dimension_lookup)
):
    payload = payload or RejectPendingRequest()
    return PendingDimensionRecord(**await lookup.reject_pending_entry(pending_id, payload.rejected_by, payload.notes))
