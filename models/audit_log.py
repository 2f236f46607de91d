from sqlalchemy import Column, String, DateTime, Text, Index
from datetime import datetime
from models.base import Base, JSONType, generate_id


class AuditLogEntry(Base):
    """
    Audit trail of lifecycle events.

    Every state transition, failure, DLQ action and cleanup writes one row.
    """
    __tablename__ = "etl_run_log"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False)
    file_id = Column(String(36), nullable=True, index=True)
    run_id = Column(String(36), nullable=True, index=True)
    level = Column(String(16), nullable=False, default="info")
    action = Column(String(64), nullable=False)
    message = Column(Text, nullable=False)
    details = Column(JSONType, nullable=True)
    user_id = Column(String(100), nullable=True)
    previous_state = Column(String(32), nullable=True)
    new_state = Column(String(32), nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("idx_run_log_org_created", "organization_id", "created_at"),
        Index("idx_run_log_action", "action"),
    )
