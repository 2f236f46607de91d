from sqlalchemy import Column, String, DateTime, Text, Index, text
from datetime import datetime
from models.base import Base, PendingStatus, generate_id


class PendingDimensionEntry(Base):
    """
    Placeholder for a dimension code referenced by a fact before it exists.

    Resolved or rejected by an operator. Resolution does not rewrite fact
    rows that already reference the placeholder id.
    """
    __tablename__ = "etl_pending_dimension"

    id = Column(String(36), primary_key=True, default=generate_id)
    organization_id = Column(String(64), nullable=False, index=True)
    type = Column(String(32), nullable=False)
    code = Column(String(255), nullable=False)
    status = Column(String(16), nullable=False, default=PendingStatus.PENDING.value)
    source_file_id = Column(String(36), nullable=True)
    resolved_at = Column(DateTime, nullable=True)
    resolved_by = Column(String(100), nullable=True)
    resolved_value = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        # At most one unresolved placeholder per (organization, type, code)
        Index(
            "uq_pending_dimension_open",
            "organization_id", "type", "code",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )
