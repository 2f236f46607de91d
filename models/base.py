from sqlalchemy import JSON
from sqlalchemy.orm import declarative_base
from sqlalchemy.dialects.postgresql import JSONB
import enum
import uuid

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def generate_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS
# ============================================================================

class ETLState(str, enum.Enum):
    """Lifecycle states shared by files and runs"""
    UPLOADED = "uploaded"
    PARSING = "parsing"
    PARSED = "parsed"
    VALIDATING = "validating"
    VALIDATED = "validated"
    AWAITING_APPROVAL = "awaiting_approval"
    APPROVED = "approved"
    LOADING = "loading"
    LOADED = "loaded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EntityType(str, enum.Enum):
    """Versioned entities tracked by the state machine"""
    ETL_FILE = "etl_file"
    ETL_RUN = "etl_run"


class FactType(str, enum.Enum):
    """Supported fact tables"""
    DESVIO_CARREGAMENTO = "desvio_carregamento"
    TRATO_CURRAL = "trato_curral"


class DimensionType(str, enum.Enum):
    """Dimensions referenced by fact records"""
    CURRAL = "curral"
    DIETA = "dieta"
    EQUIPAMENTO = "equipamento"
    TRATEIRO = "trateiro"


class PendingStatus(str, enum.Enum):
    """Pending dimension entry status"""
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class ErrorCategory(str, enum.Enum):
    """Failure buckets used by the retry subsystem"""
    TRANSIENT_NETWORK = "transient_network"
    TRANSIENT_DB = "transient_db"
    VALIDATION = "validation"
    PERMANENT = "permanent"
    UNKNOWN = "unknown"


class LogLevel(str, enum.Enum):
    """Audit log levels"""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class DuplicatePolicy(str, enum.Enum):
    """What to do when an upload matches an earlier checksum"""
    BLOCK = "block"
    WARN = "warn"
    FORCE = "force"
