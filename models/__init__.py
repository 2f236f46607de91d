"""
SQLAlchemy ORM models for database tables.

This package defines the relational schema used by the SQLAlchemy storage
adapter:

Models:
    base: Declarative base, JSON column type and shared enums
          (ETLState, EntityType, FactType, DimensionType, ErrorCategory, ...)
    etl_file: Uploaded files with checksum, state and lock columns
    etl_run: Processing runs per file with retry bookkeeping
    dead_letter: Dead-letter queue entries
    reprocessing_log: Forced reprocessing audit trail
    pending_dimension: Placeholders for unknown dimension codes
    dimensions: Dimension tables (curral, dieta, equipamento, trateiro)
    facts: Fact tables (load deviation, feeding treatment)
    audit_log: Lifecycle audit events

Usage:
    from models import ETLFile, ETLRun
    from models.base import ETLState

Tables are created with Base.metadata.create_all (see scripts/init_db.py).
"""

from models.base import Base, ETLState, EntityType, FactType, DimensionType, PendingStatus, ErrorCategory, LogLevel
from models.etl_file import ETLFile
from models.etl_run import ETLRun
from models.dead_letter import DeadLetterEntry
from models.reprocessing_log import ReprocessingLogEntry
from models.pending_dimension import PendingDimensionEntry
from models.dimensions import DimCurral, DimDieta, DimEquipamento, DimTrateiro
from models.facts import FatoDesvioCarregamento, FatoTratoCurral
from models.audit_log import AuditLogEntry

__all__ = [
    "Base",
    "ETLState",
    "EntityType",
    "FactType",
    "DimensionType",
    "PendingStatus",
    "ErrorCategory",
    "LogLevel",
    "ETLFile",
    "ETLRun",
    "DeadLetterEntry",
    "ReprocessingLogEntry",
    "PendingDimensionEntry",
    "DimCurral",
    "DimDieta",
    "DimEquipamento",
    "DimTrateiro",
    "FatoDesvioCarregamento",
    "FatoTratoCurral",
    "AuditLogEntry",
]
