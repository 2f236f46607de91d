"""
Pydantic schemas for API request/response models
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from schemas.etl import (
    DeadLetterRecord,
    ETLFileRecord,
    ETLRunRecord,
    PendingDimensionRecord,
    RetryResult,
    StateTransitionResult,
)


# ============================================================================
# Health Check Schemas
# ============================================================================

class HealthCheckResponse(BaseModel):
    """Health check response model"""
    database_connected: bool
    scheduler_running: bool = False
    runs_in_progress: int = 0
    stale_runs: int = 0
    dlq_size: int = 0
    status: str = Field(None, description="Overall system status: healthy, degraded, unhealthy")
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    request_id: Optional[str] = None

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"

        if values.get("stale_runs", 0) > 0:
            return "degraded"

        return "healthy"


# ============================================================================
# File Schemas
# ============================================================================

class DuplicateInfo(BaseModel):
    is_duplicate: bool
    original_file_id: Optional[str] = None
    allow_reprocessing: bool = True
    reason: str


class FileStatusResponse(BaseModel):
    file: ETLFileRecord
    runs: List[ETLRunRecord] = Field(default_factory=list)
    latest_run: Optional[ETLRunRecord] = None


class ChecksumHistoryResponse(BaseModel):
    checksum: str
    organization_id: str
    files: List[ETLFileRecord] = Field(default_factory=list)
    reprocessing_log: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================================================
# Run Schemas
# ============================================================================

class RunProcessResponse(BaseModel):
    """Outcome of one processing attempt"""
    success: bool
    run: Optional[ETLRunRecord] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    should_retry: bool = False
    next_retry_at: Optional[datetime] = None
    moved_to_dlq: bool = False
    dlq_entry_id: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_retry_result(cls, result: RetryResult, run: Optional[Dict[str, Any]] = None) -> "RunProcessResponse":
        return cls(
            success=result.success,
            run=ETLRunRecord(**run) if run else None,
            result=result.result if isinstance(result.result, dict) else None,
            error=result.error,
            error_category=result.error_category,
            should_retry=result.should_retry,
            next_retry_at=result.next_retry_at,
            moved_to_dlq=result.moved_to_dlq,
            dlq_entry_id=result.dlq_entry_id,
            reason=result.reason,
        )


class ApproveRunRequest(BaseModel):
    approved_by: str = Field(..., min_length=1)
    notes: Optional[str] = None


class CancelRunRequest(BaseModel):
    cancelled_by: Optional[str] = None
    reason: Optional[str] = None


class TransitionResponse(BaseModel):
    transition: StateTransitionResult
    run: ETLRunRecord


class FileUploadResponse(BaseModel):
    """Result of POST /files"""
    created: bool
    message: str
    file: Optional[ETLFileRecord] = None
    run: Optional[ETLRunRecord] = None
    duplicate: DuplicateInfo
    reprocessing_log_id: Optional[str] = None
    processing: Optional[RunProcessResponse] = None


# ============================================================================
# Dead-letter Queue Schemas
# ============================================================================

class DLQListResponse(BaseModel):
    organization_id: str
    total: int
    entries: List[DeadLetterRecord] = Field(default_factory=list)


class MarkForRetryRequest(BaseModel):
    retry_after: Optional[datetime] = None


class ResolveDLQRequest(BaseModel):
    resolved_by: str = Field(..., min_length=1)
    notes: Optional[str] = None


# ============================================================================
# Pending Dimension Schemas
# ============================================================================

class PendingDimensionListResponse(BaseModel):
    organization_id: str
    total: int
    entries: List[PendingDimensionRecord] = Field(default_factory=list)


class ResolvePendingRequest(BaseModel):
    resolved_id: Optional[str] = Field(None, description="Existing dimension id; omit to register the code")
    resolved_by: Optional[str] = None


class RejectPendingRequest(BaseModel):
    rejected_by: Optional[str] = None
    notes: Optional[str] = None


# ============================================================================
# Statistics Schemas
# ============================================================================

class StatsResponse(BaseModel):
    """Processing statistics for one organization"""
    organization_id: str
    files_total: int
    runs_total: int
    files_by_state: Dict[str, int] = Field(default_factory=dict)
    runs_by_state: Dict[str, int] = Field(default_factory=dict)
    pending_dimensions: int = 0
    retry: Dict[str, Any] = Field(default_factory=dict)
    locks: Dict[str, int] = Field(default_factory=dict)
    request_id: Optional[str] = None

