"""
Typed views of lifecycle rows and service results.

Rows cross the storage port as dictionaries; these models validate them
where a caller needs attribute access, and give every service a structured
result instead of a bare boolean.
"""

from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from models.base import ETLState, ErrorCategory


# ============================================================================
# Lifecycle entities
# ============================================================================

class StateHistoryEntry(BaseModel):
    """One step in an entity's state history"""
    state: ETLState
    previous_state: Optional[ETLState] = None
    timestamp: datetime
    actor: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ETLFileRecord(BaseModel):
    """Uploaded file"""
    id: str
    organization_id: str
    filename: str
    filepath: Optional[str] = None
    file_size: Optional[int] = None
    mime_type: Optional[str] = None
    fact_type: Optional[str] = None
    checksum: str
    checksum_algorithm: str = "sha256"
    uploaded_by: Optional[str] = None
    uploaded_at: datetime

    current_state: ETLState
    state_history: List[StateHistoryEntry] = Field(default_factory=list)
    version: int

    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None

    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    max_retries_exceeded: bool = False

    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        use_enum_values = True
        from_attributes = True


class ETLRunRecord(BaseModel):
    """Processing run over a file"""
    id: str
    file_id: str
    organization_id: str
    run_number: int

    current_state: ETLState
    state_history: List[StateHistoryEntry] = Field(default_factory=list)
    version: int

    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    max_retries_exceeded: bool = False
    last_error_category: Optional[str] = None

    records_total: int = 0
    records_processed: int = 0
    records_failed: int = 0
    records_inserted: int = 0
    records_updated: int = 0
    records_skipped: int = 0
    records_pending: int = 0
    skip_validation: bool = False

    started_by: Optional[str] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    approved_by: Optional[str] = None

    locked_by: Optional[str] = None
    lock_expires_at: Optional[datetime] = None
    processing_by: Optional[str] = None

    error_message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        use_enum_values = True
        from_attributes = True


class DeadLetterRecord(BaseModel):
    """Dead-letter queue entry"""
    id: str
    organization_id: str
    entity_type: str
    file_id: Optional[str] = None
    run_id: Optional[str] = None
    error_message: str
    error_details: Optional[Dict[str, Any]] = None
    error_category: Optional[str] = None
    retry_count: int = 0
    retry_after: Optional[datetime] = None
    marked_for_retry: bool = False
    max_retries_exceeded: bool = False
    resolved: bool = False
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class PendingDimensionRecord(BaseModel):
    """Placeholder for an unknown dimension code"""
    id: str
    organization_id: str
    type: str
    code: str
    status: str
    source_file_id: Optional[str] = None
    created_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_value: Optional[str] = None
    notes: Optional[str] = None

    class Config:
        from_attributes = True


class ReprocessingLogRecord(BaseModel):
    """Forced reprocessing audit entry"""
    id: str
    organization_id: str
    checksum: str
    original_file_id: str
    new_file_id: Optional[str] = None
    new_run_id: Optional[str] = None
    forced_by: Optional[str] = None
    reason: str
    skip_validation: bool = False
    outcome: str
    created_at: datetime


# ============================================================================
# Locking
# ============================================================================

class LockingResult(BaseModel):
    """Outcome of an optimistic update or locked operation"""
    success: bool
    data: Optional[Any] = None
    current_version: Optional[int] = None
    retry_attempt: int = 0
    conflict: bool = False
    error: Optional[str] = None


# ============================================================================
# State transitions
# ============================================================================

class StateTransitionResult(BaseModel):
    """Outcome of a file or run transition"""
    success: bool
    entity_type: str
    entity_id: str
    previous_state: ETLState
    new_state: ETLState
    version: int
    retry_attempt: int = 0

    class Config:
        use_enum_values = True


# ============================================================================
# Checksum / duplicates
# ============================================================================

class OriginalFileInfo(BaseModel):
    id: str
    filename: str
    uploaded_at: datetime
    uploaded_by: Optional[str] = None
    current_state: str


class DuplicateDetectionResult(BaseModel):
    """Whether a checksum was already uploaded by the organization"""
    is_duplicate: bool
    original_file: Optional[OriginalFileInfo] = None
    allow_reprocessing: bool = True
    reason: str


class ReprocessingOptions(BaseModel):
    """Operator choice when reprocessing a duplicate"""
    forced_reprocessing: bool = False
    user_id: Optional[str] = None
    reason: Optional[str] = None
    skip_validation: bool = False


class ReprocessingDecision(BaseModel):
    """Result of a forced reprocessing request"""
    allowed: bool
    reason: str
    original_file_id: Optional[str] = None
    new_file_id: Optional[str] = None
    new_run_id: Optional[str] = None
    reprocessing_log_id: Optional[str] = None


class UploadDecision(BaseModel):
    """Outcome of registering an upload behind the duplicate gate"""
    created: bool
    file: Optional[ETLFileRecord] = None
    run: Optional[ETLRunRecord] = None
    duplicate: DuplicateDetectionResult
    reprocessing: Optional[ReprocessingDecision] = None
    message: str


# ============================================================================
# Retry
# ============================================================================

class RetryResult(BaseModel):
    """Outcome of one attempt under retry management"""
    success: bool
    result: Optional[Any] = None
    error: Optional[str] = None
    error_category: Optional[ErrorCategory] = None
    should_retry: bool = False
    next_retry_at: Optional[datetime] = None
    delay_ms: Optional[int] = None
    attempt_number: int = 0
    moved_to_dlq: bool = False
    dlq_entry_id: Optional[str] = None
    reason: Optional[str] = None

    class Config:
        use_enum_values = True


# ============================================================================
# Upsert
# ============================================================================

class PendingReference(BaseModel):
    """A dimension reference satisfied by a placeholder"""
    type: str
    code: str
    pending_id: str


class UpsertResult(BaseModel):
    """Per-record load outcome"""
    action: str  # inserted | updated | skipped | pending
    operation: str  # inserted | updated | skipped
    natural_key: str
    record_id: Optional[str] = None
    reason: Optional[str] = None
    changed_fields: List[str] = Field(default_factory=list)
    pending_entries: List[PendingReference] = Field(default_factory=list)


class UpsertErrorEntry(BaseModel):
    natural_key: Optional[str] = None
    row_index: int
    message: str
    data: Optional[Dict[str, Any]] = None


class BatchUpsertResult(BaseModel):
    """Summed outcome of a batch load"""
    total_processed: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    pending: int = 0
    errors: List[UpsertErrorEntry] = Field(default_factory=list)
    batches: int = 0

    def merge(self, other: "BatchUpsertResult") -> "BatchUpsertResult":
        return BatchUpsertResult(
            total_processed=self.total_processed + other.total_processed,
            inserted=self.inserted + other.inserted,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            pending=self.pending + other.pending,
            errors=self.errors + other.errors,
            batches=self.batches + other.batches,
        )


class IntegrityReport(BaseModel):
    """Post-write check that every natural key landed"""
    total_expected: int
    total_found: int
    missing_keys: List[str] = Field(default_factory=list)
    is_complete: bool
