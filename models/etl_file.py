from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, Boolean, Index
from datetime import datetime
from models.base import Base, JSONType, ETLState, generate_id


class ETLFile(Base):
    """
    An uploaded file and its lifecycle.

    Purpose:
    - Checksum-based duplicate detection per organization
    - Versioned state machine record (optimistic locking)
    - Retained for audit; never deleted
    """
    __tablename__ = "etl_file"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False, index=True)

    # Upload metadata
    filename = Column(String(255), nullable=False)
    filepath = Column(String(1024), nullable=True)
    file_size = Column(BigInteger, nullable=True)
    mime_type = Column(String(100), nullable=True)
    fact_type = Column(String(50), nullable=True)
    checksum = Column(String(128), nullable=False)
    checksum_algorithm = Column(String(16), nullable=False, default="sha256")
    uploaded_by = Column(String(100), nullable=True)
    uploaded_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    # State machine
    current_state = Column(String(32), nullable=False, default=ETLState.UPLOADED.value, index=True)
    state_history = Column(JSONType, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)

    # Logical lock
    locked_by = Column(String(100), nullable=True)
    locked_at = Column(DateTime, nullable=True)
    lock_expires_at = Column(DateTime, nullable=True)
    processing_by = Column(String(100), nullable=True)
    processing_started_at = Column(DateTime, nullable=True)

    # Retry bookkeeping
    retry_count = Column(Integer, nullable=False, default=0)
    next_retry_at = Column(DateTime, nullable=True)
    max_retries_exceeded = Column(Boolean, nullable=False, default=False)
    last_error_category = Column(String(32), nullable=True)

    # Error tracking
    error_message = Column(Text, nullable=True)
    error_details = Column(JSONType, nullable=True)

    file_metadata = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        # Not unique: forced reprocessing creates a second file with the same digest
        Index("idx_etl_file_org_checksum", "organization_id", "checksum"),
        Index("idx_etl_file_retry", "next_retry_at", "max_retries_exceeded"),
        Index("idx_etl_file_lock", "lock_expires_at"),
    )
