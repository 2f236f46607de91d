from sqlalchemy import Column, String, Integer, DateTime, Text, Boolean, Index
from datetime import datetime
from models.base import Base, JSONType, generate_id


class DeadLetterEntry(Base):
    """
    Entity whose processing failed permanently or exhausted its retries.

    Entries stay until an operator re-queues, resolves or removes them.
    """
    __tablename__ = "etl_dead_letter_queue"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False, index=True)
    entity_type = Column(String(16), nullable=False)
    file_id = Column(String(36), nullable=True, index=True)
    run_id = Column(String(36), nullable=True, index=True)

    error_message = Column(Text, nullable=False)
    error_details = Column(JSONType, nullable=True)
    error_category = Column(String(32), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)

    retry_after = Column(DateTime, nullable=True)
    marked_for_retry = Column(Boolean, nullable=False, default=False)
    max_retries_exceeded = Column(Boolean, nullable=False, default=False)

    resolved = Column(Boolean, nullable=False, default=False, index=True)
    resolved_by = Column(String(100), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_dlq_org_created", "organization_id", "created_at"),
        Index("idx_dlq_marked", "marked_for_retry", "retry_after"),
    )
