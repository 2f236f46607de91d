"""
Dead-letter queue endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.dependencies import get_service
from ingestion.service import ETLStateMachineService
from ingestion.storage.base import Condition, Tables, where
from schemas.api import DLQListResponse, MarkForRetryRequest, ResolveDLQRequest
from schemas.etl import DeadLetterRecord
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/dlq", tags=["Dead-letter queue"])


@router.get("", response_model=DLQListResponse)
async def list_dlq_entries(
    organization_id: str = Query(..., min_length=1),
    include_resolved: bool = Query(False),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: ETLStateMachineService = Depends(get_service)
):
    entries = await service.retry.get_dead_letter_queue_entries(organization_id, include_resolved, limit, offset)

    conditions = where(organization_id=organization_id)
    if not include_resolved:
        conditions.append(Condition("resolved", "eq", False))
    total = await service.store.count(Tables.DEAD_LETTER, conditions)

    return DLQListResponse(
        organization_id=organization_id,
        total=total,
        entries=[DeadLetterRecord(**entry) for entry in entries],
    )


@router.post("/{dlq_id}/retry", response_model=DeadLetterRecord)
async def mark_for_retry(
    dlq_id: str,
    payload: Optional[MarkForRetryRequest] = None,
    service: ETLStateMachineService = Depends(get_service)
):
    """Mark an entry for retry; the scheduler re-queues it once retry_after passes."""
    payload = payload or MarkForRetryRequest()
    return DeadLetterRecord(**await service.retry.mark_for_retry(dlq_id, payload.retry_after))


@router.post("/{dlq_id}/resolve", response_model=DeadLetterRecord)
async def resolve_entry(
    dlq_id: str,
    payload: ResolveDLQRequest,
    service: ETLStateMachineService = Depends(get_service)
):
    return DeadLetterRecord(
        **await service.retry.resolve_dead_letter_queue_entry(dlq_id, payload.resolved_by, payload.notes)
    )


@router.delete("/{dlq_id}")
async def remove_entry(dlq_id: str, service: ETLStateMachineService = Depends(get_service)):
    return {"removed": await service.retry.remove_from_dead_letter_queue(dlq_id)}
