"""
File upload and file status endpoints
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.dependencies import get_runner, get_service
from ingestion.runner import ETLRunner
from ingestion.service import ETLStateMachineService
from models.base import DuplicatePolicy, FactType
from schemas.api import (
    ChecksumHistoryResponse,
    DuplicateInfo,
    FileStatusResponse,
    FileUploadResponse,
    RunProcessResponse,
)
from schemas.etl import ETLFileRecord, ETLRunRecord
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/files", tags=["Files"])


@router.post("", response_model=FileUploadResponse)
async def upload_file(
    request: Request,
    organization_id: str = Query(..., min_length=1),
    filename: str = Query(..., min_length=1),
    fact_type: Optional[FactType] = Query(None, description="Detected from the header when omitted"),
    uploaded_by: Optional[str] = Query(None),
    duplicate_policy: DuplicatePolicy = Query(DuplicatePolicy.BLOCK),
    reason: Optional[str] = Query(None, description="Why a duplicate is being forced through"),
    skip_validation: bool = Query(False),
    process: bool = Query(False, description="Process the first run before responding"),
    runner: ETLRunner = Depends(get_runner)
):
    """
    Upload a CSV file as the raw request body.

    Duplicate content is blocked by default; `warn` registers it when the
    earlier upload allows reprocessing, `force` always registers it and
    writes a reprocessing log entry.
    """
    request_id = getattr(request.state, "request_id", None)
    content = await request.body()
    if not content:
        raise HTTPException(status_code=400, detail="Request body is empty")

    logger.info(
        f"[{request_id}] POST /files - org={organization_id}, filename={filename}, "
        f"policy={duplicate_policy.value}, size={len(content)}"
    )

    decision = await runner.service.register_upload(
        organization_id,
        filename,
        content,
        uploaded_by=uploaded_by,
        fact_type=fact_type.value if fact_type else None,
        mime_type=request.headers.get("content-type"),
        duplicate_policy=duplicate_policy,
        reason=reason,
        skip_validation=skip_validation,
    )

    duplicate = decision.duplicate
    response = FileUploadResponse(
        created=decision.created,
        message=decision.message,
        file=decision.file,
        run=decision.run,
        duplicate=DuplicateInfo(
            is_duplicate=duplicate.is_duplicate,
            original_file_id=duplicate.original_file.id if duplicate.original_file else None,
            allow_reprocessing=duplicate.allow_reprocessing,
            reason=duplicate.reason,
        ),
        reprocessing_log_id=decision.reprocessing.reprocessing_log_id if decision.reprocessing else None,
    )

    if decision.created and process:
        result = await runner.process_run(decision.run.id)
        run = await runner.service.get_run(decision.run.id)
        response.processing = RunProcessResponse.from_retry_result(result, run)
        response.run = ETLRunRecord(**run)

    return response


@router.get("/checksums/{checksum}", response_model=ChecksumHistoryResponse)
async def get_checksum_history(
    checksum: str,
    organization_id: str = Query(..., min_length=1),
    service: ETLStateMachineService = Depends(get_service)
):
    """Every upload of a digest by one organization, with forced reprocessing entries."""
    files = await service.checksum.get_checksum_history(checksum, organization_id)
    log = await service.checksum.get_reprocessing_log(organization_id, checksum)
    return ChecksumHistoryResponse(
        checksum=checksum,
        organization_id=organization_id,
        files=[ETLFileRecord(**row) for row in files],
        reprocessing_log=log,
    )


@router.get("/{file_id}", response_model=FileStatusResponse)
async def get_file(file_id: str, service: ETLStateMachineService = Depends(get_service)):
    status = await service.get_file_status(file_id)
    return FileStatusResponse(
        file=ETLFileRecord(**status["file"]),
        runs=[ETLRunRecord(**run) for run in status["runs"]],
        latest_run=ETLRunRecord(**status["latest_run"]) if status["latest_run"] else None,
    )


@router.get("/{file_id}/runs", response_model=List[ETLRunRecord])
async def get_file_runs(file_id: str, service: ETLStateMachineService = Depends(get_service)):
    await service.get_file(file_id)
    return [ETLRunRecord(**run) for run in await service.get_runs_for_file(file_id)]
