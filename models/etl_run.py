from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, Index, ForeignKey, UniqueConstraint
from datetime import datetime
from models.base import Base, JSONType, ETLState, generate_id


class ETLRun(Base):
    """
    One processing attempt over an uploaded file.

    Purpose:
    - Sequential run numbering per file (reprocessing history)
    - Per-run retry budget and schedule
    - Record counters reported by the loader
    """
    __tablename__ = "etl_run"

    id = Column(String(36), primary_key=True, default=generate_id)
    file_id = Column(String(36), ForeignKey("etl_file.id"), nullable=False, index=True)
    organization_id = Column(String(64), nullable=False, index=True)
    run_number = Column(Integer, nullable=False)

    # State machine
    current_state = Column(String(32), nullable=False, default=ETLState.UPLOADED.value, index=True)
    state_history = Column(JSONType, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)

    # Retry bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    max_retries_exceeded = Column(Boolean, nullable=False, default=False)
    last_error_category = Column(String(32), nullable=True)

    # Statistics
    records_total = Column(Integer, nullable=False, default=0)
    records_processed = Column(Integer, nullable=False, default=0)
    records_failed = Column(Integer, nullable=False, default=0)
    records_inserted = Column(Integer, nullable=False, default=0)
    records_updated = Column(Integer, nullable=False, default=0)
    records_skipped = Column(Integer, nullable=False, default=0)
    records_pending = Column(Integer, nullable=False, default=0)

    skip_validation = Column(Boolean, nullable=False, default=False)

    # Actors and timestamps
    started_by = Column(String(100), nullable=True)
    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)
    approved_by = Column(String(100), nullable=True)
    approved_at = Column(DateTime, nullable=True)

    # Logical lock
    locked_by = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)
    processing_by = Column(String(100), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    run_metadata = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("file_id", "run_number", name="uq_etl_run_file_number"),
        Index("idx_etl_run_retry", "current_state", "next_retry_at"),
        Index("idx_etl_run_lock", "lock_expires_at"),
    )
