from sqlalchemy import Column, String, DateTime, Text, Boolean, Index
from datetime import datetime
from models.base import Base, generate_id


class ReprocessingLogEntry(Base):
    """Append-only record of a forced reprocessing of a duplicate upload."""
    __tablename__ = "etl_reprocessing_log"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False)
    checksum = Column(String(128), nullable=False)
    original_file_id = Column(String(36), nullable=False, index=True)
    new_file_id = Column(String(36), nullable=True)
    new_run_id = Column(String(36), nullable=True)
    forced_by = Column(String(100), nullable=True)
    reason = Column(Text, nullable=False, default="Manual forced reprocessing")
    skip_validation = Column(Boolean, nullable=False, default=False)
    outcome = Column(String(50), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_reprocessing_org_checksum", "organization_id", "checksum"),
    )
